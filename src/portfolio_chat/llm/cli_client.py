"""Provider backed by a local command-line model runner."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import shlex
from collections.abc import Mapping, Sequence

from portfolio_chat.errors import LlmProviderError
from portfolio_chat.llm.base import (
    LlmProviderClient,
    LlmStructuredPrompt,
    LlmStructuredResult,
    SnapshotCallback,
    inline_schema_system_prompt,
    run_cancellable,
)

logger = logging.getLogger(__name__)


class CliStructuredClient(LlmProviderClient):
    """Runs a CLI per call, writing the prompt to stdin and streaming stdout.

    The CLI has no schema support, so the schema is inlined into the prompt.
    Cancelling the call kills the child process.
    """

    provider = "cli"

    def __init__(
        self,
        command: Sequence[str] | str,
        *,
        model_flag: str | None = "--model",
        read_size: int = 1024,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("command must not be empty")
        self.model_flag = model_flag
        self.read_size = read_size
        self.env = dict(env) if env is not None else None

    async def create_structured_json(self, prompt: LlmStructuredPrompt) -> LlmStructuredResult:
        return await run_cancellable(self._run(prompt, None), prompt.signal, provider=self.provider)

    async def stream_structured_json(
        self,
        prompt: LlmStructuredPrompt,
        on_snapshot: SnapshotCallback,
    ) -> LlmStructuredResult:
        return await run_cancellable(
            self._run(prompt, on_snapshot), prompt.signal, provider=self.provider
        )

    def argv(self, prompt: LlmStructuredPrompt) -> list[str]:
        argv = list(self.command)
        if self.model_flag and prompt.model:
            argv.extend([self.model_flag, prompt.model])
        return argv

    async def _run(
        self,
        prompt: LlmStructuredPrompt,
        on_snapshot: SnapshotCallback | None,
    ) -> LlmStructuredResult:
        argv = self.argv(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as exc:
            raise LlmProviderError(self.provider, f"failed to start {argv[0]}: {exc}") from exc

        if process.stdin is None or process.stdout is None or process.stderr is None:
            await _terminate(process)
            raise LlmProviderError(self.provider, f"{argv[0]} started without stdio pipes")
        stderr_task = asyncio.ensure_future(process.stderr.read())
        try:
            try:
                process.stdin.write(_stdin_payload(prompt).encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("llm.cli_stdin_closed command=%s", argv[0])
            finally:
                process.stdin.close()

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            snapshot = ""
            while True:
                chunk = await process.stdout.read(self.read_size)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    snapshot += text
                    if on_snapshot is not None:
                        on_snapshot(snapshot)
            snapshot += decoder.decode(b"", final=True)
            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        except asyncio.CancelledError:
            stderr_task.cancel()
            await _terminate(process)
            raise

        if returncode != 0:
            raise LlmProviderError(
                self.provider,
                f"{argv[0]} exited with status {returncode}: {stderr[:2000]}",
            )
        return LlmStructuredResult(raw_text=snapshot.strip(), structured=None, usage=None)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill the child if it is still running and reap it."""
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    await process.wait()


def _stdin_payload(prompt: LlmStructuredPrompt) -> str:
    return f"{inline_schema_system_prompt(prompt)}\n\n---\n\n{prompt.user_content}\n"
