"""Tests for configuration."""

from taskengine.infrastructure.config import TimeoutConfig, read_env_file, resolve_timezone


class TestReadEnvFile:
    def test_reads_env_values(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("KEY1=value1\nKEY2=value2\n")
        monkeypatch.chdir(tmp_path)

        result = read_env_file(["KEY1", "KEY2"])
        assert result == {"KEY1": "value1", "KEY2": "value2"}

    def test_strips_quotes(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text('KEY1="quoted"\nKEY2=\'single\'\n')
        monkeypatch.chdir(tmp_path)

        result = read_env_file(["KEY1", "KEY2"])
        assert result["KEY1"] == "quoted"
        assert result["KEY2"] == "single"

    def test_skips_comments(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("# comment\nKEY1=value1\n")
        monkeypatch.chdir(tmp_path)

        result = read_env_file(["KEY1"])
        assert result == {"KEY1": "value1"}

    def test_skips_empty_lines(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("\n\nKEY1=value1\n\n")
        monkeypatch.chdir(tmp_path)

        result = read_env_file(["KEY1"])
        assert result == {"KEY1": "value1"}

    def test_only_requested_keys(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("KEY1=value1\nKEY2=value2\n")
        monkeypatch.chdir(tmp_path)

        result = read_env_file(["KEY1"])
        assert "KEY2" not in result

    def test_missing_file_returns_empty(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = read_env_file(["KEY1"])
        assert result == {}

    def test_empty_values_skipped(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("KEY1=\n")
        monkeypatch.chdir(tmp_path)

        result = read_env_file(["KEY1"])
        assert "KEY1" not in result


class TestTimeoutConfig:
    def test_defaults(self):
        config = TimeoutConfig()
        assert config.execution_timeout > 0
        assert config.claim_grace > 0

    def test_lease_outlives_execution_timeout(self):
        config = TimeoutConfig(execution_timeout=60000, claim_grace=5000)
        assert config.get_lease_duration() == 65000

    def test_timeout_in_seconds(self):
        assert TimeoutConfig(execution_timeout=1500).execution_timeout_s == 1.5


class TestResolveTimezone:
    def test_known_zone_kept(self):
        assert resolve_timezone("America/Chicago") == "America/Chicago"

    def test_unknown_or_empty_falls_back_to_utc(self):
        assert resolve_timezone("Mars/Olympus") == "UTC"
        assert resolve_timezone(None) == "UTC"
