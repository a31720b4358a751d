import asyncio
import sys

import pytest
from langchain_core.language_models import FakeListChatModel
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

from portfolio_chat.errors import LlmCancelledError, LlmProviderError, LlmTimeoutError
from portfolio_chat.llm.base import LlmStructuredPrompt, run_cancellable
from portfolio_chat.llm.cli_client import CliStructuredClient
from portfolio_chat.llm.langchain_client import LangChainStructuredClient
from portfolio_chat.llm.registry import ProviderRegistry
from portfolio_chat.schemas import ANSWER_SCHEMA
from portfolio_chat.types import TokenUsage

ANSWER_JSON = '{"message": "Hi there", "thoughts": [], "uiHints": {}}'


def _prompt(model: str = "gpt-5-mini", signal: asyncio.Event | None = None) -> LlmStructuredPrompt:
    return LlmStructuredPrompt(
        system_prompt="You answer.",
        user_content="Hello?",
        json_schema=ANSWER_SCHEMA,
        model=model,
        signal=signal,
    )


def test_registry_rejects_duplicates_and_unknown_names(scripted_client) -> None:
    registry = ProviderRegistry()
    first = scripted_client()
    registry.register("openai", first)
    registry.register("cli", scripted_client())

    assert registry.default_name == "openai"
    assert registry.get() is first
    assert registry.names() == ["openai", "cli"]
    with pytest.raises(ValueError):
        registry.register("openai", scripted_client())
    with pytest.raises(KeyError):
        registry.get("anthropic")


def test_langchain_client_parses_native_json() -> None:
    model = FakeListChatModel(responses=[ANSWER_JSON])
    client = LangChainStructuredClient("openai", lambda prompt: model, native_json_schema=True)

    result = asyncio.run(client.create_structured_json(_prompt()))

    assert result.raw_text == ANSWER_JSON
    assert result.structured == {"message": "Hi there", "thoughts": [], "uiHints": {}}


def test_langchain_client_reads_usage_metadata() -> None:
    reply = AIMessage(
        content=ANSWER_JSON,
        usage_metadata={"input_tokens": 120, "output_tokens": 30, "total_tokens": 150},
    )
    model = GenericFakeChatModel(messages=iter([reply, ANSWER_JSON]))
    client = LangChainStructuredClient("openai", lambda prompt: model, native_json_schema=True)

    result = asyncio.run(client.create_structured_json(_prompt()))
    bare = asyncio.run(client.create_structured_json(_prompt()))

    assert result.usage == TokenUsage(120, 30, 150)
    assert bare.usage is None


def test_langchain_client_streams_cumulative_snapshots() -> None:
    model = FakeListChatModel(responses=[ANSWER_JSON])
    client = LangChainStructuredClient("anthropic", lambda prompt: model, native_json_schema=False)
    snapshots: list[str] = []

    result = asyncio.run(client.stream_structured_json(_prompt(), snapshots.append))

    assert len(snapshots) > 1
    assert all(later.startswith(earlier) for earlier, later in zip(snapshots, snapshots[1:]))
    assert snapshots[-1] == ANSWER_JSON
    assert result.raw_text == ANSWER_JSON
    assert result.structured is None


def test_langchain_client_maps_failures() -> None:
    def _timeout(prompt: LlmStructuredPrompt):
        raise TimeoutError("read timed out")

    def _broken(prompt: LlmStructuredPrompt):
        raise RuntimeError("401 unauthorized")

    with pytest.raises(LlmTimeoutError):
        asyncio.run(LangChainStructuredClient("openai", _timeout, native_json_schema=True).create_structured_json(_prompt()))

    with pytest.raises(LlmProviderError) as exc_info:
        asyncio.run(
            LangChainStructuredClient("openai", _broken, native_json_schema=True).stream_structured_json(
                _prompt(), lambda snapshot: None
            )
        )
    assert exc_info.value.message.startswith("[openai]")
    assert exc_info.value.to_stream_error().code == "llm_error"


def test_run_cancellable_aborts_on_signal() -> None:
    async def scenario() -> None:
        signal = asyncio.Event()
        started = asyncio.Event()

        async def slow() -> str:
            started.set()
            await asyncio.sleep(30)
            return "late"

        async def trigger() -> None:
            await started.wait()
            signal.set()

        trigger_task = asyncio.ensure_future(trigger())
        with pytest.raises(LlmCancelledError):
            await run_cancellable(slow(), signal, provider="test")
        await trigger_task

    asyncio.run(scenario())


def test_run_cancellable_with_preset_signal() -> None:
    async def scenario() -> None:
        signal = asyncio.Event()
        signal.set()

        async def never() -> str:
            return "unused"

        with pytest.raises(LlmCancelledError) as exc_info:
            await run_cancellable(never(), signal, provider="test")
        assert exc_info.value.to_stream_error().code == "stream_interrupted"

    asyncio.run(scenario())


def test_cli_argv_appends_model_flag() -> None:
    client = CliStructuredClient("claude -p --output-format text")
    assert client.argv(_prompt(model="claude-sonnet-4-5")) == [
        "claude",
        "-p",
        "--output-format",
        "text",
        "--model",
        "claude-sonnet-4-5",
    ]


def test_cli_client_streams_stdout() -> None:
    script = (
        "import sys\n"
        "prompt = sys.stdin.read()\n"
        "assert 'answer_payload' in prompt and 'Hello?' in prompt\n"
        "sys.stdout.write('{\"message\": \"from cli\"}')\n"
    )
    client = CliStructuredClient([sys.executable, "-c", script], model_flag=None, read_size=4)
    snapshots: list[str] = []

    result = asyncio.run(client.stream_structured_json(_prompt(), snapshots.append))

    assert result.raw_text == '{"message": "from cli"}'
    assert snapshots[-1] == result.raw_text
    assert result.structured is None


def test_cli_client_reports_non_zero_exit() -> None:
    script = "import sys\nsys.stdin.read()\nsys.stderr.write('model not found')\nsys.exit(3)\n"
    client = CliStructuredClient([sys.executable, "-c", script], model_flag=None)

    with pytest.raises(LlmProviderError) as exc_info:
        asyncio.run(client.create_structured_json(_prompt()))
    assert "status 3" in exc_info.value.message
    assert "model not found" in exc_info.value.message


def test_cli_client_missing_binary() -> None:
    client = CliStructuredClient(["definitely-not-a-real-binary-xyz"], model_flag=None)

    with pytest.raises(LlmProviderError):
        asyncio.run(client.create_structured_json(_prompt()))


def test_cli_client_is_killed_on_cancel() -> None:
    script = "import time\ntime.sleep(30)\n"
    client = CliStructuredClient([sys.executable, "-c", script], model_flag=None)

    async def scenario() -> None:
        signal = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, signal.set)
        with pytest.raises(LlmCancelledError):
            await client.create_structured_json(_prompt(signal=signal))

    asyncio.run(asyncio.wait_for(scenario(), timeout=10))

def test_cli_client_reaps_killed_child(monkeypatch: pytest.MonkeyPatch) -> None:
    spawned: list[asyncio.subprocess.Process] = []
    spawn = asyncio.create_subprocess_exec

    async def recording_spawn(*args, **kwargs):
        process = await spawn(*args, **kwargs)
        spawned.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_spawn)
    client = CliStructuredClient([sys.executable, "-c", "import time\ntime.sleep(30)\n"], model_flag=None)

    async def scenario() -> None:
        signal = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, signal.set)
        with pytest.raises(LlmCancelledError):
            await client.stream_structured_json(_prompt(signal=signal), lambda snapshot: None)

    asyncio.run(asyncio.wait_for(scenario(), timeout=10))

    [process] = spawned
    assert process.returncode is not None
