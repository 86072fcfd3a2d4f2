from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any, Literal

from crewflow.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

OutputFormat = Literal["text", "stream-json"]

SYSTEM_PROMPT_ENV = "CREWFLOW_SYSTEM_PROMPT_FILE"


class CommandBackend(AgentBackend):
    """Runs an agent CLI as a subprocess, passing the prompt as the last argument.

    The system prompt is written to a temporary file whose path is exported as
    ``CREWFLOW_SYSTEM_PROMPT_FILE``. With ``output_format="stream-json"`` each
    stdout line is read as a JSON event and its text content is streamed; lines
    that are not JSON are passed through unchanged.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str | None = None,
        output_format: OutputFormat = "text",
        working_directory: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandBackend requires a non-empty command")
        self.command = list(command)
        self.name = name or Path(self.command[0]).name
        self.output_format = output_format
        self.working_directory = working_directory

    def build_command(self, user_prompt: str) -> list[str]:
        return [*self.command, user_prompt]

    @staticmethod
    def _event_text(event: dict[str, Any]) -> str:
        """Pull the text an agent event carries, whichever field the CLI puts it in."""
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                block["text"]
                for block in content
                if isinstance(block, dict) and isinstance(block.get("text"), str)
            )
        return next(
            (event[key] for key in ("delta", "result", "text") if isinstance(event.get(key), str)),
            "",
        )

    @staticmethod
    def _is_unbalanced(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _decode_stream_line(self, pending: str, line: str) -> tuple[str, str | None]:
        """Fold one stdout line into the pending buffer.

        Returns the new buffer and the text to emit, if any. A JSON event split
        across lines stays buffered until its brackets balance.
        """
        candidate = pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if self._is_unbalanced(candidate):
                return candidate, None
            return "", line
        if isinstance(event, dict):
            return "", self._event_text(event) or None
        return "", None

    async def _spawn(self, command: list[str], env: dict[str, str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name}: executable {self.command[0]!r} is not installed",
                backend=self.name,
                retriable=False,
            ) from exc

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        logger.warning("Killing unfinished agent process %s", getattr(process, "pid", "?"))
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
            )

        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as prompt_file:
            prompt_file.write(system_prompt)
            prompt_file.flush()
            env = {**os.environ, SYSTEM_PROMPT_ENV: prompt_file.name}

            logger.debug("Starting agent command %s", self.command[0])
            process = await self._spawn(self.build_command(user_prompt), env)
            try:
                if process.stdout is None:
                    raise BackendProcessError(
                        f"{self.name}: agent process has no stdout pipe",
                        backend=self.name,
                        retriable=False,
                    )
                pending = ""
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace")
                    if self.output_format == "text":
                        yield line
                        continue
                    line = line.strip()
                    if line:
                        pending, text = self._decode_stream_line(pending, line)
                        if text:
                            yield text
                if pending:
                    yield pending

                exit_code = await process.wait()
                stderr_text = ""
                if process.stderr is not None:
                    stderr_text = (await process.stderr.read()).decode("utf-8", "replace").strip()
                if exit_code != 0:
                    raise BackendExecutionError(
                        f"{self.name} exited with status {exit_code}: {stderr_text}",
                        backend=self.name,
                        exit_code=exit_code,
                        retriable=True,
                    )
            finally:
                await self._reap(process)
