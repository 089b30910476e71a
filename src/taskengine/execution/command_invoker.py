"""CommandAgentInvoker: runs the agent as a subprocess speaking JSON over stdio."""

from __future__ import annotations

import asyncio
import json
import shlex

from taskengine.errors import ExecutionError
from taskengine.execution.output_parser import AgentOutput, AgentOutputParser
from taskengine.execution.types import InvocationResult, TriggerContext
from taskengine.infrastructure.config import AGENT_COMMAND, read_env_file
from taskengine.infrastructure.logger import logger

SECRET_KEYS = ["AGENT_API_KEY"]
KILL_WAIT_S = 5.0


class CommandAgentInvoker:
    """Spawns `command` per invocation, writes the request to stdin and reads
    marker-delimited JSON results from stdout. The last block wins.

    The runner bounds the call with its own timeout; cancelling the call
    kills the process.
    """

    def __init__(self, command: str = AGENT_COMMAND, kill_wait_s: float = KILL_WAIT_S) -> None:
        self._argv = shlex.split(command) if command else []
        self._kill_wait_s = kill_wait_s

    async def invoke(
        self,
        agent_id: str,
        instructions: str,
        tools: list[str],
        trigger_context: TriggerContext,
    ) -> InvocationResult:
        if not self._argv:
            raise ExecutionError("No agent command configured", {"agent_id": agent_id})

        logger.info("Starting agent command", agent_id=agent_id, command=self._argv[0])

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise ExecutionError(f"Failed to start agent command: {err}", {"agent_id": agent_id})

        # Secrets travel on stdin only, never through the environment
        stdin_data = json.dumps({
            "agent_id": agent_id,
            "instructions": instructions,
            "tools": tools,
            "trigger": trigger_context.model_dump(mode="json"),
            "secrets": read_env_file(SECRET_KEYS),
        }).encode()

        assert proc.stdin is not None
        proc.stdin.write(stdin_data)
        proc.stdin.write_eof()

        parser = AgentOutputParser()
        last_output: AgentOutput | None = None

        async def read_stdout() -> None:
            nonlocal last_output
            assert proc.stdout is not None
            async for raw_line in proc.stdout:
                output = parser.feed(raw_line.decode(errors="replace"))
                if output:
                    last_output = output

        async def read_stderr() -> None:
            assert proc.stderr is not None
            async for raw_line in proc.stderr:
                line = raw_line.decode(errors="replace").rstrip()
                if line:
                    logger.debug("Agent stderr", agent_id=agent_id, line=line)

        try:
            await asyncio.gather(read_stdout(), read_stderr(), proc.wait())
        except asyncio.CancelledError:
            logger.warning("Agent command cancelled, killing", agent_id=agent_id, pid=proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            # Reap the child so it does not linger as a zombie
            try:
                await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=self._kill_wait_s)
            except asyncio.TimeoutError:
                logger.warning("Killed agent command did not exit", agent_id=agent_id, pid=proc.pid)
            raise

        details = {"agent_id": agent_id, "exit_code": proc.returncode}
        if last_output is None:
            if proc.returncode:
                raise ExecutionError(f"Agent command exited with code {proc.returncode}", details)
            raise ExecutionError("Agent command produced no output", details)
        if last_output.status == "error":
            raise ExecutionError(last_output.error or "Unknown agent error", details)

        logger.info("Agent command finished", agent_id=agent_id, exit_code=proc.returncode)
        return InvocationResult(
            output=last_output.output or "",
            tool_outputs=last_output.tool_outputs,
            duration_ms=last_output.duration_ms,
        )
