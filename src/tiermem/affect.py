"""
Affect engine for per-character emotional state.

Implements a pure VAD (valence, arousal, dominance) update with:
- exponential pull of the current state toward the personality baseline
- trait-weighted integration of typed stimuli extracted from a turn
- negativity bias, saturation/friction, reserved caps, max step and trust gate
- discrete affects (comfort, trust, irritation, anxiety) derived from VAD movement

No I/O happens here; every call returns new frozen state objects.
"""
from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, NamedTuple

from .config import (
    AFFECT_BASELINE_PULL,
    AFFECT_DISCRETE_DECAY,
    AFFECT_FRICTION_K,
    AFFECT_NEGATIVITY_BIAS,
    AFFECT_SATURATION_K,
)
from .errors import AffectConfigError
from .observability import get_logger
from .tokenization import count_phrase_hits, tokenize_for_matching

logger = get_logger(__name__)


class Mode(str, Enum):
    GUARDED = "Guarded"
    OPENING_UP = "OpeningUp"
    WARM = "Warm"
    DISTRESSED = "Distressed"


INITIAL_MODE = Mode.GUARDED


class SignalKind(str, Enum):
    COMPLIMENT = "compliment"
    INSULT = "insult"
    EMPATHY = "empathy"
    THREAT = "threat"
    TONE = "tone"


@dataclass(frozen=True)
class VAD:
    valence: float = 0.0
    arousal: float = 0.0
    dominance: float = 0.0

    def __add__(self, other: "VAD") -> "VAD":
        return VAD(
            self.valence + other.valence,
            self.arousal + other.arousal,
            self.dominance + other.dominance,
        )

    def __sub__(self, other: "VAD") -> "VAD":
        return VAD(
            self.valence - other.valence,
            self.arousal - other.arousal,
            self.dominance - other.dominance,
        )

    def scaled(self, factor: float) -> "VAD":
        return VAD(self.valence * factor, self.arousal * factor, self.dominance * factor)

    def weighted(self, weights: "VAD") -> "VAD":
        return VAD(
            self.valence * weights.valence,
            self.arousal * weights.arousal,
            self.dominance * weights.dominance,
        )

    def clamped(self, low: float, high: float) -> "VAD":
        return VAD(
            _clamp(self.valence, low, high),
            _clamp(self.arousal, low, high),
            _clamp(self.dominance, low, high),
        )

    def distance(self, other: "VAD") -> float:
        diff = self - other
        return math.sqrt(diff.valence ** 2 + diff.arousal ** 2 + diff.dominance ** 2)

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "VAD":
        payload = payload or {}
        return cls(
            float(payload.get("valence", 0.0)),
            float(payload.get("arousal", 0.0)),
            float(payload.get("dominance", 0.0)),
        )


ZERO_VAD = VAD()


@dataclass(frozen=True)
class DiscreteAffects:
    comfort: float = 0.0
    trust: float = 0.0
    irritation: float = 0.0
    anxiety: float = 0.0


@dataclass(frozen=True)
class PersonalityTraits:
    """Static personality parameters; the three gains are in [0, 1]."""

    volatility: float = 0.0
    sensitivity: float = 0.0
    assertiveness: float = 0.0
    reserved: bool = False


@dataclass(frozen=True)
class AffectHistory:
    cumulative_delta: VAD = ZERO_VAD


@dataclass(frozen=True)
class AffectMeta:
    turns: int = 0


@dataclass(frozen=True)
class EmotionState:
    baseline: VAD
    current: VAD
    discrete: DiscreteAffects
    mode: Mode
    traits: PersonalityTraits
    history: AffectHistory = field(default_factory=AffectHistory)
    meta: AffectMeta = field(default_factory=AffectMeta)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["mode"] = self.mode.value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EmotionState":
        history = payload.get("history") or {}
        meta = payload.get("meta") or {}
        return cls(
            baseline=VAD.from_mapping(payload.get("baseline")),
            current=VAD.from_mapping(payload.get("current")),
            discrete=DiscreteAffects(**(payload.get("discrete") or {})),
            mode=Mode(payload.get("mode", INITIAL_MODE.value)),
            traits=PersonalityTraits(**(payload.get("traits") or {})),
            history=AffectHistory(VAD.from_mapping(history.get("cumulative_delta"))),
            meta=AffectMeta(int(meta.get("turns", 0))),
        )


@dataclass(frozen=True)
class AffectSignal:
    """A typed stimulus: a VAD direction (each axis in [-1, 1]) and a magnitude in [0, 1]."""

    kind: SignalKind
    valence: float = 0.0
    arousal: float = 0.0
    dominance: float = 0.0
    magnitude: float = 1.0

    @property
    def direction(self) -> VAD:
        return VAD(self.valence, self.arousal, self.dominance)


@dataclass(frozen=True)
class AffectInput:
    text: str = ""
    sentiment: float | None = None
    event_descriptions: tuple[str, ...] = ()


class AffectUpdate(NamedTuple):
    state: EmotionState
    delta: VAD


@dataclass(frozen=True)
class AffectConfig:
    clamp_min: float = -1.0
    clamp_max: float = 1.0
    baseline_pull: float = AFFECT_BASELINE_PULL
    affect_decay: float = AFFECT_DISCRETE_DECAY
    # Discrete stimulus scales per signal kind.
    compliment_scale: float = 0.6
    insult_scale: float = 0.8
    empathy_scale: float = 0.5
    threat_scale: float = 0.9
    trust_share: float = 0.7
    # Feedback of the stimulated discrete affects into the raw VAD delta.
    comfort_valence_influence: float = 0.25
    trust_valence_influence: float = 0.2
    irritation_valence_influence: float = -0.35
    anxiety_valence_influence: float = -0.4
    irritation_arousal_influence: float = 0.45
    anxiety_arousal_influence: float = 0.5
    trust_dominance_influence: float = 0.25
    anxiety_dominance_influence: float = -0.3
    # VAD shaping.
    negativity_bias: float = AFFECT_NEGATIVITY_BIAS
    saturation_k: float = AFFECT_SATURATION_K
    friction_k: float = AFFECT_FRICTION_K
    max_step_valence: float = 0.6
    max_step_arousal: float = 0.5
    max_step_dominance: float = 0.4
    reserved_arousal_above_baseline: float = 0.22
    reserved_dominance_above_baseline: float = 0.18
    reserved_positive_arousal_scale: float = 0.55
    reserved_positive_dominance_scale: float = 0.6
    trust_gate_min: float = 0.35
    trust_gate_max: float = 1.0
    # Trait weights: weight = 1 + trait * gain.
    valence_trait_gain: float = 0.5
    arousal_trait_gain: float = 1.0
    dominance_trait_gain: float = 0.5
    # Discrete affect threshold rules.
    comfort_valence_threshold: float = 0.2
    comfort_gain: float = 0.1
    trust_valence_threshold: float = 0.3
    trust_gain: float = 0.08
    anxiety_arousal_spike: float = 0.2
    anxiety_gain: float = 0.15
    irritation_valence_drop: float = 0.2
    irritation_gain: float = 0.15
    # Mode guard thresholds.
    opening_up_valence: float = 0.15
    opening_up_comfort: float = 0.4
    warm_valence: float = 0.3
    warm_trust: float = 0.5
    distress_valence: float = 0.25
    distress_irritation: float = 0.4
    distress_anxiety: float = 0.45

    def validate(self) -> "AffectConfig":
        if not self.clamp_min < self.clamp_max:
            raise AffectConfigError("clamp_min must be lower than clamp_max")
        for name in ("baseline_pull", "affect_decay", "trust_gate_min", "trust_gate_max"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise AffectConfigError(f"{name} must be within [0, 1], got {value}")
        if self.trust_gate_min > self.trust_gate_max:
            raise AffectConfigError("trust_gate_min must not exceed trust_gate_max")
        for name in ("max_step_valence", "max_step_arousal", "max_step_dominance"):
            if getattr(self, name) <= 0:
                raise AffectConfigError(f"{name} must be positive")
        if self.negativity_bias < 1.0:
            raise AffectConfigError("negativity_bias must be >= 1")
        for name in _NON_NEGATIVE_COEFFICIENTS:
            value = getattr(self, name)
            if value < 0:
                raise AffectConfigError(f"{name} must not be negative, got {value}")
        return self


_NON_NEGATIVE_COEFFICIENTS = (
    "compliment_scale",
    "insult_scale",
    "empathy_scale",
    "threat_scale",
    "trust_share",
    "saturation_k",
    "friction_k",
    "reserved_arousal_above_baseline",
    "reserved_dominance_above_baseline",
    "reserved_positive_arousal_scale",
    "reserved_positive_dominance_scale",
    "valence_trait_gain",
    "arousal_trait_gain",
    "dominance_trait_gain",
    "comfort_gain",
    "trust_gain",
    "anxiety_gain",
    "irritation_gain",
)

DEFAULT_AFFECT_CONFIG = AffectConfig()


def _clamp(value: float, low: float, high: float) -> float:
    return low if value < low else high if value > high else value


def _clamp_unit(value: float) -> float:
    return _clamp(value, 0.0, 1.0)


def _max_step(delta: float, limit: float) -> float:
    return _clamp(delta, -limit, limit)


def validate_traits(traits: PersonalityTraits):
    for name in ("volatility", "sensitivity", "assertiveness"):
        value = getattr(traits, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            raise AffectConfigError(f"trait {name} must be a number within [0, 1], got {value!r}")


def validate_baseline(baseline: VAD, config: AffectConfig):
    for axis in ("valence", "arousal", "dominance"):
        value = getattr(baseline, axis)
        if not config.clamp_min <= value <= config.clamp_max:
            raise AffectConfigError(
                f"baseline {axis} must be within [{config.clamp_min}, {config.clamp_max}], got {value}"
            )


def trait_weights(traits: PersonalityTraits, config: AffectConfig) -> VAD:
    return VAD(
        1.0 + traits.sensitivity * config.valence_trait_gain,
        1.0 + traits.volatility * config.arousal_trait_gain,
        1.0 + traits.assertiveness * config.dominance_trait_gain,
    )


def initialize_state(
    baseline: VAD | Mapping[str, float],
    traits: PersonalityTraits | Mapping[str, Any] | None = None,
    config: AffectConfig | None = None,
) -> EmotionState:
    """Builds a fresh state resting at the baseline; rejects out-of-range input."""
    cfg = (config or DEFAULT_AFFECT_CONFIG).validate()
    if not isinstance(baseline, VAD):
        baseline = VAD.from_mapping(baseline)
    if traits is None:
        traits = PersonalityTraits()
    elif not isinstance(traits, PersonalityTraits):
        try:
            traits = PersonalityTraits(**dict(traits))
        except TypeError as exc:
            raise AffectConfigError(f"unknown personality trait: {exc}") from exc
    validate_baseline(baseline, cfg)
    validate_traits(traits)
    return EmotionState(
        baseline=baseline,
        current=baseline,
        discrete=DiscreteAffects(),
        mode=INITIAL_MODE,
        traits=traits,
    )


# ------------------------------------------------------------------------------
# Signal extraction
# ------------------------------------------------------------------------------
SIGNAL_LEXICON: dict[SignalKind, tuple[str, ...]] = {
    SignalKind.COMPLIMENT: ("thank you", "thanks", "great", "awesome", "love", "nice", "appreciate"),
    SignalKind.INSULT: ("stupid", "dumb", "hate", "sucks", "idiot"),
    SignalKind.EMPATHY: ("sorry", "feel for you", "understand"),
    SignalKind.THREAT: ("kill", "hurt", "attack", "destroy"),
}

SIGNAL_DIRECTIONS: dict[SignalKind, VAD] = {
    SignalKind.COMPLIMENT: VAD(0.8, 0.2, 0.1),
    SignalKind.INSULT: VAD(-0.8, 0.4, -0.2),
    SignalKind.EMPATHY: VAD(0.5, -0.3, 0.1),
    SignalKind.THREAT: VAD(-0.7, 0.7, -0.5),
}

_EXCLAMATION_RE = re.compile(r"!")
_HITS_FOR_FULL_MAGNITUDE = 3.0
_EVENT_CONTEXT_WEIGHT = 0.5


def _lexicon_signals(text: str, weight: float) -> Iterator[AffectSignal]:
    tokens = tokenize_for_matching(text)
    if not tokens:
        return
    for kind, phrases in SIGNAL_LEXICON.items():
        hits = count_phrase_hits(tokens, phrases)
        if hits <= 0:
            continue
        direction = SIGNAL_DIRECTIONS[kind]
        yield AffectSignal(
            kind=kind,
            valence=direction.valence,
            arousal=direction.arousal,
            dominance=direction.dominance,
            magnitude=_clamp_unit(hits / _HITS_FOR_FULL_MAGNITUDE) * weight,
        )


def extract_signals(affect_input: AffectInput | str) -> Iterator[AffectSignal]:
    """
    Yields typed stimuli for one turn.
    The turn text is scanned at full weight and event descriptions at half weight.
    """
    if isinstance(affect_input, str):
        affect_input = AffectInput(text=affect_input)

    yield from _lexicon_signals(affect_input.text, 1.0)

    exclamations = len(_EXCLAMATION_RE.findall(affect_input.text or ""))
    if exclamations:
        yield AffectSignal(
            kind=SignalKind.TONE,
            arousal=1.0,
            magnitude=_clamp_unit(exclamations / 5.0),
        )

    if affect_input.sentiment is not None and affect_input.sentiment != 0:
        polarity = _clamp(float(affect_input.sentiment), -1.0, 1.0)
        yield AffectSignal(
            kind=SignalKind.TONE,
            valence=1.0 if polarity > 0 else -1.0,
            magnitude=abs(polarity),
        )

    for description in affect_input.event_descriptions:
        yield from _lexicon_signals(description, _EVENT_CONTEXT_WEIGHT)


# ------------------------------------------------------------------------------
# Update
# ------------------------------------------------------------------------------
def _apply_reserved_caps(state: EmotionState, proposed: VAD, cfg: AffectConfig, notes: list[str]) -> VAD:
    if not state.traits.reserved:
        return proposed
    arousal = proposed.arousal
    dominance = proposed.dominance

    arousal_cap = state.baseline.arousal + cfg.reserved_arousal_above_baseline
    if arousal > 0 and state.current.arousal + arousal > arousal_cap:
        arousal = min(arousal, max(0.0, arousal_cap - state.current.arousal))
        notes.append("reserved_cap_arousal")
    if arousal > 0:
        arousal *= cfg.reserved_positive_arousal_scale

    dominance_cap = state.baseline.dominance + cfg.reserved_dominance_above_baseline
    if dominance > 0 and state.current.dominance + dominance > dominance_cap:
        dominance = min(dominance, max(0.0, dominance_cap - state.current.dominance))
        notes.append("reserved_cap_dominance")
    if dominance > 0:
        dominance *= cfg.reserved_positive_dominance_scale

    return VAD(proposed.valence, arousal, dominance)


def _stimulate_discrete(previous: DiscreteAffects, signals: Iterable[AffectSignal], cfg: AffectConfig) -> DiscreteAffects:
    comfort = previous.comfort * cfg.affect_decay
    trust = previous.trust * cfg.affect_decay
    irritation = previous.irritation * cfg.affect_decay
    anxiety = previous.anxiety * cfg.affect_decay

    for signal in signals:
        m = signal.magnitude
        if signal.kind is SignalKind.COMPLIMENT:
            comfort += cfg.compliment_scale * m
            trust += cfg.compliment_scale * cfg.trust_share * m
        elif signal.kind is SignalKind.EMPATHY:
            comfort += cfg.empathy_scale * m
            trust += cfg.empathy_scale * cfg.trust_share * m
        elif signal.kind is SignalKind.INSULT:
            irritation += cfg.insult_scale * m
            anxiety += cfg.insult_scale * 0.3 * m
        elif signal.kind is SignalKind.THREAT:
            irritation += cfg.threat_scale * 0.5 * m
            anxiety += cfg.threat_scale * m

    return DiscreteAffects(
        comfort=_clamp_unit(comfort),
        trust=_clamp_unit(trust),
        irritation=_clamp_unit(irritation),
        anxiety=_clamp_unit(anxiety),
    )


def _affect_influence(discrete: DiscreteAffects, cfg: AffectConfig) -> VAD:
    return VAD(
        discrete.comfort * cfg.comfort_valence_influence
        + discrete.trust * cfg.trust_valence_influence
        + discrete.irritation * cfg.irritation_valence_influence
        + discrete.anxiety * cfg.anxiety_valence_influence,
        discrete.irritation * cfg.irritation_arousal_influence + discrete.anxiety * cfg.anxiety_arousal_influence,
        discrete.trust * cfg.trust_dominance_influence + discrete.anxiety * cfg.anxiety_dominance_influence,
    )


def _apply_threshold_rules(
    stimulated: DiscreteAffects,
    current: VAD,
    baseline: VAD,
    delta: VAD,
    cfg: AffectConfig,
) -> DiscreteAffects:
    comfort = stimulated.comfort
    trust = stimulated.trust
    irritation = stimulated.irritation
    anxiety = stimulated.anxiety

    valence_lift = current.valence - baseline.valence
    if valence_lift > cfg.comfort_valence_threshold:
        comfort += cfg.comfort_gain
    if valence_lift > cfg.trust_valence_threshold and delta.valence >= 0:
        trust += cfg.trust_gain
    if delta.arousal > cfg.anxiety_arousal_spike and delta.valence < 0:
        anxiety += cfg.anxiety_gain
    if delta.valence < -cfg.irritation_valence_drop:
        irritation += cfg.irritation_gain

    return DiscreteAffects(
        comfort=_clamp_unit(comfort),
        trust=_clamp_unit(trust),
        irritation=_clamp_unit(irritation),
        anxiety=_clamp_unit(anxiety),
    )


def update(
    state: EmotionState,
    signals: Iterable[AffectSignal],
    config: AffectConfig | None = None,
) -> AffectUpdate:
    """Applies one turn of stimuli and returns the new state plus the delta actually applied."""
    cfg = config or DEFAULT_AFFECT_CONFIG
    signals = tuple(signals)
    notes: list[str] = []

    pulled = state.current + (state.baseline - state.current).scaled(cfg.baseline_pull)

    stimulated = _stimulate_discrete(state.discrete, signals, cfg)
    weights = trait_weights(state.traits, cfg)
    raw = _affect_influence(stimulated, cfg)
    for signal in signals:
        raw = raw + signal.direction.scaled(signal.magnitude).weighted(weights)

    valence = raw.valence
    if valence < 0:
        valence *= cfg.negativity_bias
        notes.append("negativity_bias")

    distance = pulled.distance(state.baseline)
    saturation = 1.0 - math.tanh(cfg.saturation_k * distance) * 0.5
    friction = 1.0 - min(0.8, distance * cfg.friction_k * 0.2)
    shaped = VAD(valence, raw.arousal, raw.dominance).scaled(saturation * friction)
    if saturation < 0.95:
        notes.append("saturation")
    if friction < 0.95:
        notes.append("friction")

    shaped = _apply_reserved_caps(replace(state, current=pulled), shaped, cfg, notes)

    step = VAD(
        _max_step(shaped.valence, cfg.max_step_valence),
        _max_step(shaped.arousal, cfg.max_step_arousal),
        _max_step(shaped.dominance, cfg.max_step_dominance),
    )
    if step.valence != shaped.valence:
        notes.append("valence_max_step")

    if step.valence > 0:
        gate = cfg.trust_gate_min + (cfg.trust_gate_max - cfg.trust_gate_min) * stimulated.trust
        step = replace(step, valence=step.valence * gate)
        notes.append("trust_gate")

    current = (pulled + step).clamped(cfg.clamp_min, cfg.clamp_max)
    applied = current - state.current

    discrete = _apply_threshold_rules(stimulated, current, state.baseline, applied, cfg)
    new_state = replace(
        state,
        current=current,
        discrete=discrete,
        history=AffectHistory(state.history.cumulative_delta + applied),
        meta=AffectMeta(state.meta.turns + 1),
    )
    logger.debug(
        "affect_updated",
        signals=len(signals),
        turns=new_state.meta.turns,
        valence=round(current.valence, 4),
        arousal=round(current.arousal, 4),
        dominance=round(current.dominance, 4),
        notes=notes,
    )
    return AffectUpdate(new_state, applied)
