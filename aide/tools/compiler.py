"""
Dynamic Tool Compiler: turns model-authored Python source into live tools.

The model submits the source of a single public function plus the import
statements it needs. The compiler:

1. SCAFFOLDS the source into a module: a baseline import of ``Annotated``,
   the caller's imports, then the function source
2. COMPILES the module in memory with ``compile()`` and executes its body in a
   fresh ``types.ModuleType``; nothing touches disk or ``sys.modules``
3. EXTRACTS exactly one public function, its docstring (the description) and
   a JSON Schema derived from its signature through a pydantic model
4. REGISTERS it as a generated ToolDefinition and PERSISTS the source so it is
   replayed on the next start

Every failure comes back as an ``ERROR: ...`` string the model can read and
act on; the registry is never left half-updated.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import re
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog
from pydantic import Field, create_model

from aide.errors import CancellationRequested, CompilationFailure, DuplicateToolName
from aide.history import SENSITIVE_MARKER
from aide.tools.executor import run_on_daemon_thread
from aide.tools.registry import SOURCE_GENERATED, ToolDefinition, ToolRegistry
from aide.tools.store import ToolStore

logger = structlog.get_logger(__name__)

BASELINE_IMPORTS = ("from typing import Annotated",)
DUPLICATE_NAME_RESULT = "ERROR: name already in use, choose another"

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_module_counter = itertools.count(1)


@dataclass
class CompiledToolSpec:
    """Everything extracted from one successful compilation."""

    name: str
    description: str
    input_schema: dict[str, Any]
    sensitive: bool
    handler: Callable[..., Any]
    source_text: str
    imports: list[str] = field(default_factory=list)

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
            handler=self.handler,
            sensitive=self.sensitive,
            category="generated",
            source=SOURCE_GENERATED,
        )


@dataclass
class ReplayReport:
    """Outcome of replaying the persisted tools at startup."""

    loaded: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)   # (name, reason)


def normalize_imports(imports: Any) -> list[str]:
    """Accept a list of statements or one newline/semicolon separated string."""
    if imports is None:
        return []
    if isinstance(imports, str):
        parts = re.split(r"[\n;]", imports)
    else:
        parts = [str(item) for item in imports]
    return [part.strip() for part in parts if part.strip()]


def build_input_schema(func: Callable[..., Any]) -> dict[str, Any]:
    """
    Derive a JSON Schema for *func*'s parameters.

    Every parameter must be annotated as ``Annotated[T, "description"]``.
    Parameters without a default are required. Raises CompilationFailure with
    one diagnostic per offending parameter.
    """
    try:
        hints = typing.get_type_hints(func, include_extras=True)
    except Exception as e:
        raise CompilationFailure([f"could not resolve annotations: {type(e).__name__}: {e}"]) from e

    diagnostics: list[str] = []
    fields: dict[str, Any] = {}
    for pname, param in inspect.signature(func).parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            diagnostics.append(f"parameter '{pname}': *args and **kwargs are not supported")
            continue
        annotation = hints.get(pname)
        description: Optional[str] = None
        if annotation is not None and typing.get_origin(annotation) is typing.Annotated:
            base, *metadata = typing.get_args(annotation)
            description = next((m for m in metadata if isinstance(m, str)), None)
            annotation = base
        if annotation is None or description is None:
            diagnostics.append(
                f"parameter '{pname}' must be annotated as Annotated[type, \"description\"]"
            )
            continue
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[pname] = (annotation, Field(default, description=description))

    if diagnostics:
        raise CompilationFailure(diagnostics)

    try:
        model = create_model(f"{func.__name__}_input", **fields)
        schema = model.model_json_schema()
    except Exception as e:
        raise CompilationFailure([f"unsupported parameter type: {type(e).__name__}: {e}"]) from e

    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    schema.setdefault("properties", {})
    schema["type"] = "object"
    return schema


class DynamicToolCompiler:
    """
    Compiles, registers, persists, replays and removes generated tools.

    All registry mutation happens on the calling task; the compiler never
    spawns work of its own.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        store: ToolStore,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._registry = registry
        self._store = store
        self._cancel_event = cancel_event

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile(self, source_text: str, imports: Any = ()) -> CompiledToolSpec:
        """Compile *source_text* into a CompiledToolSpec. Raises CompilationFailure."""
        import_lines = normalize_imports(imports)
        header = list(BASELINE_IMPORTS) + import_lines
        scaffold = "\n".join(header + [source_text])
        line_offset = len(header)
        module_name = f"aide_generated_{next(_module_counter)}"

        self._check_cancelled()
        try:
            code = compile(scaffold, f"<{module_name}>", "exec")
        except SyntaxError as e:
            raise CompilationFailure([self._describe_syntax_error(e, line_offset)]) from e
        self._check_cancelled()

        module = types.ModuleType(module_name)
        try:
            exec(code, module.__dict__)
        except asyncio.CancelledError:
            raise
        except BaseException as e:
            # sys.exit() or a bare raise in the module body is a bad submission
            raise CompilationFailure([f"{type(e).__name__}: {e}"]) from e

        candidates = [
            obj for name, obj in vars(module).items()
            if inspect.isfunction(obj)
            and obj.__module__ == module_name
            and obj.__name__ == name
            and not name.startswith("_")
        ]
        if len(candidates) != 1:
            names = ", ".join(f.__name__ for f in candidates) or "none"
            raise CompilationFailure([
                f"expected exactly one public function, found {len(candidates)} ({names})"
            ])
        func = candidates[0]

        name = func.__name__
        if not _TOOL_NAME_RE.match(name):
            raise CompilationFailure([f"function name '{name}' is not a valid tool name"])

        description = inspect.getdoc(func)
        if not description:
            raise CompilationFailure([
                f"function '{name}' needs a docstring describing what it does and returns"
            ])

        input_schema = build_input_schema(func)

        return CompiledToolSpec(
            name=name,
            description=description,
            input_schema=input_schema,
            sensitive=SENSITIVE_MARKER in description,
            handler=func,
            source_text=source_text,
            imports=import_lines,
        )

    def add(self, source_text: str, imports: Any = ()) -> str:
        """
        Compile, register and persist a new tool.

        Returns ``SUCCESS: ...`` or ``ERROR: ...``. Cancellation raises
        CancellationRequested.
        """
        try:
            spec = self.compile(source_text, imports)
        except CompilationFailure as e:
            logger.info("tool_compiler.compile_failed", diagnostics=e.diagnostics)
            return "ERROR: " + "\n".join(e.diagnostics)
        return self._install(spec)

    async def add_async(self, source_text: str, imports: Any = ()) -> str:
        """
        Like add(), but the module body runs on a daemon thread.

        A submission that never finishes executing cannot stall the event
        loop; the caller's timeout abandons it with nothing registered.
        Registration and persistence still happen on the calling task.
        """
        try:
            spec = await run_on_daemon_thread(
                self.compile,
                {"source_text": source_text, "imports": imports},
                name="aide-compile",
            )
        except CompilationFailure as e:
            logger.info("tool_compiler.compile_failed", diagnostics=e.diagnostics)
            return "ERROR: " + "\n".join(e.diagnostics)
        return self._install(spec)

    def _install(self, spec: CompiledToolSpec) -> str:
        definition = spec.to_definition()
        try:
            self._registry.register(definition)
        except DuplicateToolName:
            logger.info("tool_compiler.duplicate_name", name=spec.name)
            return DUPLICATE_NAME_RESULT

        try:
            inserted = self._store.insert(spec.name, spec.source_text, spec.imports)
        except Exception:
            self._registry.unregister(spec.name)
            raise
        if not inserted:
            self._registry.unregister(spec.name)
            return DUPLICATE_NAME_RESULT

        logger.info(
            "tool_compiler.compiled",
            name=spec.name,
            sensitive=spec.sensitive,
            parameters=list(spec.input_schema.get("properties", {})),
        )
        return f"SUCCESS: '{spec.name}' is now available as a tool."

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_persisted(self) -> ReplayReport:
        """Recompile and register every stored tool; failures are skipped."""
        report = ReplayReport()
        for stored in self._store.list_all():
            try:
                spec = self.compile(stored.source_text, stored.imports)
                if spec.name != stored.name:
                    raise CompilationFailure([
                        f"source now defines '{spec.name}' instead of '{stored.name}'"
                    ])
                self._registry.register(spec.to_definition())
            except (CompilationFailure, DuplicateToolName) as e:
                logger.warning("tool_compiler.replay_skipped", name=stored.name, error=str(e))
                report.skipped.append((stored.name, str(e)))
                continue
            report.loaded.append(stored.name)

        logger.info(
            "tool_compiler.replayed",
            loaded=len(report.loaded),
            skipped=len(report.skipped),
        )
        return report

    def remove(self, name: str) -> str:
        """Unregister and delete a generated tool. Built-in tools cannot be removed."""
        tool = self._registry.get(name)
        if tool is None or not tool.is_generated:
            return "FAILURE: A generated tool with the name provided does not exist."

        self._registry.unregister(name)
        try:
            deleted = self._store.delete(name)
        except Exception as e:
            self._registry.register(tool)
            logger.error("tool_compiler.remove_failed", name=name, error=str(e))
            return f"FAILURE: could not delete the stored tool: {type(e).__name__}: {e}"
        if not deleted:
            self._registry.register(tool)
            return "FAILURE: the stored record for this tool could not be deleted."

        logger.info("tool_compiler.removed", name=name)
        return "SUCCESS"

    # ------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise CancellationRequested("tool compilation cancelled")

    @staticmethod
    def _describe_syntax_error(error: SyntaxError, line_offset: int) -> str:
        lineno = error.lineno or 0
        if lineno > line_offset:
            where = f"source line {lineno - line_offset}"
        else:
            where = f"import line {lineno - len(BASELINE_IMPORTS)}"
        return f"SyntaxError at {where}: {error.msg}"
