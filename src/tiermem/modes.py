"""
Behavioral mode state machine over an EmotionState.
Guards are evaluated in order and the first match decides the target mode.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Sequence

from .affect import (
    DEFAULT_AFFECT_CONFIG,
    AffectConfig,
    AffectInput,
    AffectUpdate,
    EmotionState,
    Mode,
    extract_signals,
    update,
)
from .observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModeContext:
    config: AffectConfig = DEFAULT_AFFECT_CONFIG
    extras: Mapping[str, Any] = field(default_factory=dict)


GuardPredicate = Callable[[EmotionState, ModeContext], bool]


@dataclass(frozen=True)
class ModeGuard:
    name: str
    target: Mode
    predicate: GuardPredicate

    def matches(self, state: EmotionState, context: ModeContext) -> bool:
        return bool(self.predicate(state, context))


@dataclass(frozen=True)
class ModeTransitionResult:
    transitioned: bool
    mode: Mode
    previous: Mode
    reason: str | None = None


def _comfort_gain(state: EmotionState, ctx: ModeContext) -> bool:
    cfg = ctx.config
    return (
        state.mode is Mode.GUARDED
        and state.current.valence > state.baseline.valence + cfg.opening_up_valence
        and state.discrete.comfort > cfg.opening_up_comfort
    )


def _trust_gain(state: EmotionState, ctx: ModeContext) -> bool:
    cfg = ctx.config
    return (
        state.mode is Mode.OPENING_UP
        and state.current.valence > state.baseline.valence + cfg.warm_valence
        and state.discrete.trust > cfg.warm_trust
    )


def _negative_affect(state: EmotionState, ctx: ModeContext) -> bool:
    cfg = ctx.config
    return state.current.valence < state.baseline.valence - cfg.distress_valence and (
        state.discrete.irritation > cfg.distress_irritation
        or state.discrete.anxiety > cfg.distress_anxiety
    )


def _recovered(state: EmotionState, ctx: ModeContext) -> bool:
    return state.mode is Mode.DISTRESSED and state.current.valence >= state.baseline.valence


DEFAULT_GUARDS: tuple[ModeGuard, ...] = (
    ModeGuard("comfort_gain", Mode.OPENING_UP, _comfort_gain),
    ModeGuard("trust_gain", Mode.WARM, _trust_gain),
    ModeGuard("negative_affect", Mode.DISTRESSED, _negative_affect),
    ModeGuard("recovered", Mode.GUARDED, _recovered),
)


class ModeMachine:
    """Ordered-guard finite state machine; it has no terminal mode."""

    def __init__(self, guards: Sequence[ModeGuard] = DEFAULT_GUARDS):
        self.guards = tuple(guards)

    def maybe_transition(self, state: EmotionState, context: ModeContext | None = None) -> ModeTransitionResult:
        ctx = context or ModeContext()
        for guard in self.guards:
            if not guard.matches(state, ctx):
                continue
            if guard.target is state.mode:
                return ModeTransitionResult(False, state.mode, state.mode, guard.name)
            logger.info(
                "mode_transition",
                previous=state.mode.value,
                mode=guard.target.value,
                reason=guard.name,
                turns=state.meta.turns,
            )
            return ModeTransitionResult(True, guard.target, state.mode, guard.name)
        return ModeTransitionResult(False, state.mode, state.mode)

    def apply(self, state: EmotionState, context: ModeContext | None = None) -> tuple[EmotionState, ModeTransitionResult]:
        result = self.maybe_transition(state, context)
        if result.transitioned:
            state = replace(state, mode=result.mode)
        return state, result


class AffectEngine:
    """Runs extract -> update -> mode transition for one character turn."""

    def __init__(self, config: AffectConfig | None = None, machine: ModeMachine | None = None):
        self.config = (config or DEFAULT_AFFECT_CONFIG).validate()
        self.machine = machine or ModeMachine()

    def step(
        self,
        state: EmotionState,
        affect_input: AffectInput | str,
        extras: Mapping[str, Any] | None = None,
    ) -> tuple[AffectUpdate, ModeTransitionResult]:
        result = update(state, extract_signals(affect_input), self.config)
        context = ModeContext(config=self.config, extras=dict(extras or {}))
        new_state, transition = self.machine.apply(result.state, context)
        return AffectUpdate(new_state, result.delta), transition
