from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from collections import OrderedDict
from uuid import uuid4
import inspect
import itertools
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

QUERY_PREFIX = "_"

# ====== Errors ======

class EngineError(Exception):
    """Base class for sync engine failures."""

class ActionNotFound(EngineError, LookupError):
    def __init__(self, concept: str, action: str):
        super().__init__(f"{concept}.{action} not found")
        self.concept = concept
        self.action = action

class BurstError(EngineError):
    """A burst was aborted by one of the engine's safety limits."""
    def __init__(self, flow: str, message: str):
        super().__init__(message)
        self.flow = flow

class DepthExceeded(BurstError):
    pass

class CycleDetected(BurstError):
    pass

# ====== Records ======

@dataclass(frozen=True)
class ActionRecord:
    id: str
    concept: str
    action: str
    input: Dict[str, Any]
    output: Dict[str, Any]
    flow: str
    sequence: int
    depth: int = 0
    cause: Optional[str] = None
    t: float = field(default_factory=lambda: time.time())

    @property
    def ref(self) -> str:
        return f"{self.concept}.{self.action}"

    @property
    def failed(self) -> bool:
        return "error" in self.output

# ====== Concepts & registry ======

class Concept:
    """Base for concepts. ``interface`` lists the actions and ``_`` queries the
    registry exposes; leave it empty to fall back to the class's own methods."""
    interface: Tuple[str, ...] = ()

    def __init__(self, name: str):
        self.name = name

@dataclass(frozen=True)
class ActionSpec:
    concept: str
    action: str
    fn: Callable[..., Dict[str, Any]]
    is_query: bool = False

    def __call__(self, **kwargs: Any) -> Dict[str, Any]:
        return self.fn(**kwargs)

class ActionRegistry:
    """Maps ``(concept, action)`` to the bound method that implements it."""

    def __init__(self):
        self._actions: Dict[Tuple[str, str], ActionSpec] = {}
        self._interfaces: Dict[str, Tuple[str, ...]] = {}
        self._instances: Dict[str, Any] = {}

    def register(self, concept_name: str, instance: Any, interface: Optional[Sequence[str]] = None) -> Tuple[str, ...]:
        names = tuple(interface or getattr(instance, "interface", ()) or self._discover(instance))
        specs = []
        for name in names:
            fn = getattr(instance, name, None)
            if not callable(fn):
                raise TypeError(f"{concept_name}.{name} is declared but not callable")
            specs.append(ActionSpec(concept_name, name, fn, name.startswith(QUERY_PREFIX)))
        # replace, never merge: a reloaded concept may have dropped actions
        for key in [k for k in self._actions if k[0] == concept_name]:
            del self._actions[key]
        for spec in specs:
            self._actions[(concept_name, spec.action)] = spec
        self._interfaces[concept_name] = names
        self._instances[concept_name] = instance
        logger.debug("Registered %s: %s", concept_name, ", ".join(names))
        return names

    @staticmethod
    def _discover(instance: Any) -> List[str]:
        return [
            name for name, member in vars(type(instance)).items()
            if not name.startswith("__") and inspect.isfunction(member)
        ]

    def resolve(self, concept: str, action: str) -> ActionSpec:
        try:
            return self._actions[(concept, action)]
        except KeyError:
            raise ActionNotFound(concept, action) from None

    def interface(self, concept: str) -> Tuple[str, ...]:
        if concept not in self._interfaces:
            raise ActionNotFound(concept, "*")
        return self._interfaces[concept]

    def instance(self, concept: str) -> Any:
        """The registered object itself, for callers outside the sync loop."""
        if concept not in self._instances:
            raise ActionNotFound(concept, "*")
        return self._instances[concept]

    def concepts(self) -> List[str]:
        return list(self._interfaces)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._actions

# ====== Rules ======

class Var:
    __slots__ = ("name", "optional")
    def __init__(self, name: str, optional: bool = False):
        self.name = name
        self.optional = optional
    def __repr__(self) -> str:
        return f"Var({self.name!r})" if not self.optional else f"maybe(Var({self.name!r}))"
    def __eq__(self, other: object) -> bool:
        return isinstance(other, Var) and other.name == self.name
    def __hash__(self) -> int:
        return hash(("Var", self.name))

def maybe(var: Var) -> Var:
    """Mark ``var`` as optional in a when-pattern: a missing key leaves it unbound."""
    return Var(var.name, optional=True)

def _split_ref(ref: str) -> Tuple[str, str]:
    concept, sep, action = ref.partition(".")
    if not sep or not concept or not action:
        raise ValueError(f"Action reference must look like 'Concept.action', got {ref!r}")
    return concept, action

@dataclass
class WhenPattern:
    concept: str
    action: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.concept}.{self.action}"

def when(ref: str, inputs: Optional[Dict[str, Any]] = None, outputs: Optional[Dict[str, Any]] = None) -> WhenPattern:
    concept, action = _split_ref(ref)
    return WhenPattern(concept, action, dict(inputs or {}), dict(outputs or {}))

@dataclass
class ThenAction:
    concept: str
    action: str
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.concept}.{self.action}"

    def resolve(self, frame: "Frame") -> Dict[str, Any]:
        """Substitute bound variables; unbound ones are left out of the call."""
        resolved: Dict[str, Any] = {}
        for key, value in self.args.items():
            if isinstance(value, Var):
                if value.name not in frame.vars:
                    continue
                value = frame.vars[value.name]
            resolved[key] = value
        return resolved

WhereFn = Callable[["Engine", "Frame"], bool]

@dataclass
class Sync:
    name: str
    when: List[WhenPattern]
    then: List[ThenAction]
    where: Optional[WhereFn] = None

    def refs(self) -> List[Tuple[str, str]]:
        return [(p.concept, p.action) for p in self.when] + [(t.concept, t.action) for t in self.then]

def _as_pattern(entry: Any) -> WhenPattern:
    if isinstance(entry, WhenPattern):
        return entry
    ref, *shapes = entry
    return when(ref, *shapes)

def _as_then(entry: Any) -> ThenAction:
    if isinstance(entry, ThenAction):
        return entry
    if len(entry) == 3:
        concept, action, args = entry
    else:
        (concept, action), args = _split_ref(entry[0]), entry[1]
    return ThenAction(concept, action, dict(args))

def sync(fn: Optional[Callable[..., Dict[str, Any]]] = None, *, name: Optional[str] = None):
    """Turn a rule function into a :class:`Sync`.

    The function is called once with a :class:`Var` for each of its
    parameters and must return ``{"when": [...], "then": [...]}``, optionally
    with a ``"where"`` filter. Usable bare (``@sync``) or with a name override.
    """
    def build(f: Callable[..., Dict[str, Any]]) -> Sync:
        placeholders = {p: Var(p) for p in inspect.signature(f).parameters}
        spec = f(**placeholders)
        return Sync(
            name=name or f.__name__,
            when=[_as_pattern(p) for p in spec["when"]],
            then=[_as_then(t) for t in spec.get("then", [])],
            where=spec.get("where"),
        )
    if fn is not None:
        return build(fn)
    return build

# ====== Matching ======

class Frame:
    def __init__(self, flow: str, actions: List[ActionRecord], vars: Optional[Dict[str, Any]] = None):
        self.flow = flow
        self.actions = actions
        self.vars: Dict[str, Any] = dict(vars or {})
    def get(self, var: str) -> Any:
        return self.vars[var]

def _match_shape(shape: Dict[str, Any], values: Dict[str, Any], binding: Dict[str, Any]) -> bool:
    for key, expected in shape.items():
        if key not in values:
            if isinstance(expected, Var) and expected.optional:
                continue
            return False
        actual = values[key]
        if isinstance(expected, Var):
            if expected.name in binding:
                if binding[expected.name] != actual:
                    return False
            else:
                binding[expected.name] = actual
        elif actual != expected:
            return False
    return True

def match_pattern(pattern: WhenPattern, record: ActionRecord, binding: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Extend ``binding`` with ``record``, or return None if they disagree."""
    if record.concept != pattern.concept or record.action != pattern.action:
        return None
    trial = dict(binding)
    if not _match_shape(pattern.inputs, record.input, trial):
        return None
    if not _match_shape(pattern.outputs, record.output, trial):
        return None
    return trial

def unify(patterns: Sequence[WhenPattern], records: Sequence[ActionRecord], binding: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
    """Yield every consistent binding for ``patterns``, newest records first.

    Patterns are satisfied in declaration order; when a later pattern has no
    candidate the search backtracks into the next older match of the earlier one.
    """
    binding = dict(binding or {})
    if not patterns:
        yield binding
        return
    head, rest = patterns[0], patterns[1:]
    for rec in reversed(records):
        trial = match_pattern(head, rec, binding)
        if trial is not None:
            yield from unify(rest, records, trial)

# ====== Engine ======

class BurstState(Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    DISPATCHING = "dispatching"
    QUIESCENT = "quiescent"
    FAILED = "failed"

@dataclass
class Burst:
    flow: str
    records: List[ActionRecord] = field(default_factory=list)
    state: BurstState = BurstState.IDLE
    dispatched: int = 0
    error: Optional[BurstError] = None

class Engine:
    def __init__(self, registry: Optional[ActionRegistry] = None, *, max_depth: int = 32, max_actions: int = 512, flow_retention: int = 1024):
        self.registry = registry or ActionRegistry()
        self.syncs: Dict[str, Sync] = {}
        self.max_depth = max_depth
        self.max_actions = max_actions
        self.flow_retention = flow_retention
        self._bursts: "OrderedDict[str, Burst]" = OrderedDict()
        self._index: Dict[Tuple[str, str], List[Sync]] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Any) -> "Engine":
        return cls(max_depth=cfg.max_burst_depth, max_actions=cfg.max_burst_actions, flow_retention=cfg.flow_retention)

    # --- registration ---

    def register_concept(self, concept: Concept) -> None:
        self.registry.register(concept.name, concept)

    def register_sync(self, s: Sync, validate: bool = True) -> None:
        if validate:
            for concept, action in s.refs():
                self.registry.resolve(concept, action)
        if s.name in self.syncs:
            logger.info("Replacing sync %s", s.name)
        self.syncs[s.name] = s
        self._reindex()

    def load_syncs(self, syncs: Sequence[Sync]) -> List[Sync]:
        """Register each sync; a sync naming an unknown action is logged and skipped."""
        loaded = []
        for s in syncs:
            try:
                self.register_sync(s)
            except ActionNotFound as exc:
                logger.error("Skipping sync %s: %s", s.name, exc)
                continue
            loaded.append(s)
        logger.info("Loaded %d/%d syncs", len(loaded), len(syncs))
        return loaded

    def _reindex(self) -> None:
        index: Dict[Tuple[str, str], List[Sync]] = {}
        for s in self.syncs.values():
            for key in dict.fromkeys((p.concept, p.action) for p in s.when):
                index.setdefault(key, []).append(s)
        self._index = index

    # --- bursts ---

    def start_flow(self, flow: Optional[str] = None) -> str:
        flow = flow or str(uuid4())
        with self._lock:
            if flow not in self._bursts:
                self._bursts[flow] = Burst(flow)
                self._prune()
        return flow

    def _prune(self) -> None:
        excess = len(self._bursts) - self.flow_retention
        if excess <= 0:
            return
        for flow in list(self._bursts):
            if excess <= 0:
                break
            if self._bursts[flow].state in (BurstState.QUIESCENT, BurstState.FAILED):
                del self._bursts[flow]
                excess -= 1

    def burst(self, flow: str) -> Burst:
        return self._bursts[flow]

    def records(self, flow: Optional[str] = None) -> List[ActionRecord]:
        with self._lock:
            if flow is not None:
                return list(self._bursts[flow].records)
            recs = [r for b in self._bursts.values() for r in b.records]
        return sorted(recs, key=lambda r: r.sequence)

    def invoke(self, concept: str, action: str, input_map: Dict[str, Any], *, flow: Optional[str]=None) -> ActionRecord:
        """Perform an external action and run its burst until quiescent."""
        spec = self.registry.resolve(concept, action)
        flow = self.start_flow(flow)
        with self._lock:
            burst = self._bursts[flow]
        rec = self._perform(burst, spec, input_map, depth=0, cause=None)
        try:
            self._react(burst, rec, chain=())
        except BurstError as exc:
            burst.state = BurstState.FAILED
            burst.error = exc
            logger.error("Burst %s failed: %s", flow, exc)
            raise
        burst.state = BurstState.QUIESCENT
        return rec

    def query(self, concept: str, qname: str, **kwargs) -> Dict[str, Any]:
        if not qname.startswith(QUERY_PREFIX):
            raise ValueError("Query names must start with '_' to be pure")
        return self.registry.resolve(concept, qname)(**kwargs)

    def _perform(self, burst: Burst, spec: ActionSpec, input_map: Dict[str, Any], depth: int, cause: Optional[str]) -> ActionRecord:
        try:
            output = spec(**input_map)
        except Exception as exc:
            logger.warning("%s.%s raised", spec.concept, spec.action, exc_info=True)
            output = {"error": str(exc) or type(exc).__name__}
        if output is None:
            output = {}
        elif not isinstance(output, dict):
            output = {"error": f"{spec.concept}.{spec.action} returned {type(output).__name__}, expected a dict"}
        with self._lock:
            rec = ActionRecord(
                id=str(uuid4()), concept=spec.concept, action=spec.action,
                input=dict(input_map), output=dict(output), flow=burst.flow,
                sequence=next(self._seq), depth=depth, cause=cause,
            )
            burst.records.append(rec)
        logger.debug("[%s] #%d %s %s -> %s", burst.flow[:8], rec.sequence, rec.ref, rec.input, rec.output)
        return rec

    def _evaluate(self, burst: Burst, rec: ActionRecord) -> List[Tuple[Sync, Frame]]:
        """Find the rules that newly fire because of ``rec``."""
        burst.state = BurstState.EVALUATING
        with self._lock:
            actions = list(burst.records)
        fired = []
        for s in self._index.get((rec.concept, rec.action), ()):
            try:
                frame = self._first_frame(s, rec, actions)
            except Exception:
                logger.exception("Sync %s failed while matching; skipped", s.name)
                continue
            if frame is not None:
                fired.append((s, frame))
        return fired

    def _first_frame(self, s: Sync, rec: ActionRecord, actions: List[ActionRecord]) -> Optional[Frame]:
        for i, pattern in enumerate(s.when):
            seed = match_pattern(pattern, rec, {})
            if seed is None:
                continue
            others = s.when[:i] + s.when[i + 1:]
            for binding in unify(others, actions, seed):
                frame = Frame(rec.flow, actions, binding)
                if s.where is None or s.where(self, frame):
                    return frame
        return None

    def _react(self, burst: Burst, rec: ActionRecord, chain: Tuple[str, ...]) -> None:
        for s, frame in self._evaluate(burst, rec):
            burst.state = BurstState.DISPATCHING
            logger.debug("[%s] %s fired on %s with %s", burst.flow[:8], s.name, rec.ref, frame.vars)
            for then in s.then:
                try:
                    args = then.resolve(frame)
                    key = f"{s.name}:{then.ref}:{json.dumps(args, sort_keys=True, default=str)}"
                except Exception:
                    logger.exception("Sync %s could not build arguments for %s; skipped", s.name, then.ref)
                    continue
                if key in chain:
                    raise CycleDetected(burst.flow, f"{s.name} re-fired with identical arguments {args}")
                if rec.depth + 1 >= self.max_depth:
                    raise DepthExceeded(burst.flow, f"burst exceeded depth {self.max_depth} at {s.name}")
                burst.dispatched += 1
                if burst.dispatched > self.max_actions:
                    raise DepthExceeded(burst.flow, f"burst exceeded {self.max_actions} dispatched actions")
                try:
                    spec = self.registry.resolve(then.concept, then.action)
                except ActionNotFound as exc:
                    logger.error("Sync %s: %s; then-entry skipped", s.name, exc)
                    continue
                child = self._perform(burst, spec, args, depth=rec.depth + 1, cause=rec.id)
                self._react(burst, child, chain + (key,))
