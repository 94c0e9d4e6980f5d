"""
aide: Main Entry Point.

Wires every subsystem together and runs one interactive session:

    config → tool store + registry + compiler → built-in tools → replay of
    stored tools → completion engine → safety gate → agentic loop →
    prompt cache → session

Ctrl+C or SIGTERM requests a graceful shutdown; the session finishes its
current step and the stores are closed.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

import structlog
from rich.console import Console

from aide.api.claude import CompletionEngine
from aide.cache.embeddings import EmbeddingService
from aide.cache.semantic import SemanticCache
from aide.cache.store import PromptCacheStore
from aide.channels.base import UserChannel
from aide.channels.console import ConsoleChannel
from aide.config import AideConfig
from aide.errors import SessionAborted
from aide.harness.loop import AgenticLoop
from aide.harness.retry import RetryConfig
from aide.harness.safety import ErrorGate, SafetyGate
from aide.history import ConversationHistory
from aide.session import AgentSession
from aide.tools.builtin import register_builtin_tools
from aide.tools.compiler import DynamicToolCompiler, ReplayReport
from aide.tools.executor import ToolExecutor
from aide.tools.registry import ToolRegistry
from aide.tools.store import ToolStore

_REDACTED_KEYS = ("prompt", "content", "source_text")
_MAX_LOGGED_LEN = 80


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that truncates conversation text in log output.

    Prompts, message content and tool source stay out of logs beyond a short
    prefix.
    """
    for key in _REDACTED_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > _MAX_LOGGED_LEN:
            event_dict[key] = value[:_MAX_LOGGED_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog over stdlib logging. Later calls only adjust the level."""
    global _logging_configured  # noqa: PLW0603
    level = logging.INFO if verbose else logging.WARNING
    if _logging_configured:
        logging.getLogger().setLevel(level)
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)


@dataclass
class Components:
    """Everything one session is built from; the stores need closing afterwards."""

    config: AideConfig
    session: AgentSession
    registry: ToolRegistry
    tool_store: ToolStore
    cache_store: Optional[PromptCacheStore]
    replay: ReplayReport

    def close(self) -> None:
        self.tool_store.close()
        if self.cache_store is not None:
            self.cache_store.close()


def build_components(
    config: AideConfig,
    channel: UserChannel,
    cancel_event: Optional[asyncio.Event] = None,
) -> Components:
    """Construct and wire the session's collaborators."""
    cancel_event = cancel_event or asyncio.Event()

    tool_store = ToolStore(config.tools_db_path)
    tool_store.initialize()
    registry = ToolRegistry()
    compiler = DynamicToolCompiler(registry, tool_store, cancel_event=cancel_event)

    engine = CompletionEngine(config.model)
    register_builtin_tools(registry, compiler, engine=engine, config=config.tools)
    replay = compiler.load_persisted()

    safety = SafetyGate(channel, config.safety)
    executor = ToolExecutor(
        default_timeout=config.tools.default_timeout,
        max_output_length=config.tools.max_output_length,
    )
    loop = AgenticLoop(
        engine,
        registry,
        executor,
        safety,
        max_iterations=config.safety.max_tool_iterations,
        cancel_event=cancel_event,
        call_context=channel.thinking,
    )

    cache_store: Optional[PromptCacheStore] = None
    cache: Optional[SemanticCache] = None
    if config.cache.enabled:
        cache_store = PromptCacheStore(config.prompt_cache_path, config.cache.collection_name)
        cache_store.initialize()
        embeddings = EmbeddingService(
            config.embedding,
            retry_config=RetryConfig.from_model_config(config.model),
        )
        cache = SemanticCache(
            cache_store,
            embeddings,
            channel,
            config.cache,
            tagger=engine.generate_tags,
        )

    session = AgentSession(
        history=ConversationHistory(),
        registry=registry,
        loop=loop,
        channel=channel,
        safety=safety,
        cache=cache,
        error_gate=ErrorGate(channel, cancel_event),
        settings_rows=config.as_rows,
        cancel_event=cancel_event,
    )
    return Components(
        config=config,
        session=session,
        registry=registry,
        tool_store=tool_store,
        cache_store=cache_store,
        replay=replay,
    )


class AideApp:
    """Top-level runtime: builds the session, installs signal handlers, runs it."""

    def __init__(self, config: Optional[AideConfig] = None, console: Optional[Console] = None):
        self._config = config
        self._console = console or Console()
        self._shutdown_event = asyncio.Event()

    def _request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> int:
        config = self._config or AideConfig()
        channel = ConsoleChannel(self._console, shutdown_event=self._shutdown_event)
        components = build_components(config, channel, cancel_event=self._shutdown_event)

        for name, reason in components.replay.skipped:
            channel.show_notice(f"Stored tool '{name}' was not loaded: {reason}", style="yellow")

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._request_shutdown)
            loop.add_signal_handler(signal.SIGTERM, self._request_shutdown)
        except (NotImplementedError, RuntimeError):
            logger.debug("app.signal_handlers_unavailable")

        try:
            await components.session.run()
        except SessionAborted as e:
            channel.show_notice(str(e), style="red")
            return 1
        finally:
            components.close()
        channel.show_notice("Bye.")
        return 0


def main() -> None:
    """Run one interactive session (``python -m aide.main``)."""
    configure_logging()
    raise SystemExit(asyncio.run(AideApp().run()))


if __name__ == "__main__":
    main()
