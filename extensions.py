from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence


EXTENSION_API_VERSION = 1

# Events the interpreter emits, with the positional arguments each handler receives.
EVENTS: Dict[str, str] = {
    "program_start": "(interpreter, state)",
    "before_instruction": "(interpreter, instruction, state)",
    "after_instruction": "(interpreter, instruction, result, state)",
    "before_call": "(interpreter, label_name, args, state)",
    "after_return": "(interpreter, label_name, state)",
    "on_error": "(interpreter, error)",
    "program_end": "(interpreter, state)",
}


class DarkExtensionError(Exception):
    pass


class AbortSignal(Exception):
    """Raised by a host policy to stop a run; the run ends in the aborted state."""

    def __init__(self, reason: str, step_index: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.step_index = step_index


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]]


StepHandler = Callable[[Any, StepContext], None]


@dataclass(frozen=True)
class EventHook:
    priority: int
    handler: Callable[..., None]
    owner: str


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: StepHandler
    owner: str


@dataclass
class HookRegistry:
    hooks: Dict[str, List[EventHook]] = field(default_factory=dict)
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise DarkExtensionError(f"Unknown event '{event}' (known: {', '.join(sorted(EVENTS))})")
        bucket = self.hooks.setdefault(event, [])
        bucket.append(EventHook(priority=priority, handler=handler, owner=ext_name))
        # Highest priority first; equal priorities keep registration order.
        bucket.sort(key=lambda hook: -hook.priority)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for hook in self.hooks.get(event, ()):
            hook.handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str) -> None:
        if every_n < 1:
            raise DarkExtensionError(f"Step rule '{name}' must run every 1 or more steps, not {every_n}")
        self.step_rules.append(StepRule(name=name, every_n=every_n, handler=handler, owner=ext_name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if ctx.step_index % rule.every_n == 0:
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Handle passed to ``dark_vm_register``. Registration methods double as decorators."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        def register(fn: Callable[..., None]) -> Callable[..., None]:
            self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        def register(fn: StepHandler) -> StepHandler:
            self._services.hook_registry.add_step_rule(
                name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name
            )
            return fn

        return register if handler is None else register(handler)

    def max_steps(self, limit: int) -> None:
        install_step_budget(self._services, limit, owner=self._ext_name)


def install_step_budget(services: RuntimeServices, max_steps: int, *, owner: str = "<host>") -> None:
    """Abort any run that tries to execute more than ``max_steps`` instructions."""
    if max_steps < 0:
        raise DarkExtensionError(f"Step budget must be >= 0, not {max_steps}")

    def step_budget(_interpreter: Any, ctx: StepContext) -> None:
        # Step 0 is the seed entry, so step N is the N-th instruction.
        if ctx.step_index > max_steps:
            raise AbortSignal(f"step budget of {max_steps} instructions exhausted", step_index=ctx.step_index)

    services.hook_registry.add_step_rule(name="step_budget", every_n=1, handler=step_budget, ext_name=owner)


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    return "darkvm_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + digest


def load_extension_module(path: str) -> Any:
    if not os.path.isfile(path):
        raise DarkExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise DarkExtensionError(f"Cannot import extension {path}")
    module = importlib.util.module_from_spec(spec)

    # Sibling imports resolve against the extension's own directory while it loads.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    finally:
        if ext_dir in sys.path:
            sys.path.remove(ext_dir)
    return module


def read_darkx(pointer_file: str) -> List[str]:
    """Read a ``.darkx`` file: one extension path per line, ``#`` comments allowed."""
    try:
        with open(pointer_file, "r", encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError as exc:
        raise DarkExtensionError(f"Cannot read {pointer_file}: {exc}") from exc
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    paths: List[str] = []
    for raw in lines:
        entry = raw.split("#", 1)[0].strip()
        if entry:
            paths.append(os.path.join(base_dir, entry))
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for path in paths:
        if path.lower().endswith(".darkx"):
            expanded.extend(read_darkx(path))
        else:
            expanded.append(path)
    return [os.path.abspath(p) for p in expanded]


def register_extension(services: RuntimeServices, module: Any, path: str) -> None:
    api_version = getattr(module, "DARK_VM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise DarkExtensionError(f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}")
    register = getattr(module, "dark_vm_register", None)
    if not callable(register):
        raise DarkExtensionError(f"Extension {path} must define callable dark_vm_register(ext)")
    ext_name = getattr(module, "DARK_VM_EXTENSION_NAME", None) or os.path.splitext(os.path.basename(path))[0]
    register(ExtensionAPI(services=services, ext_name=str(ext_name)))


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        register_extension(services, load_extension_module(path), path)
    return services
