import unittest
from dataclasses import replace

from tiermem.affect import VAD, DiscreteAffects, Mode, PersonalityTraits, initialize_state
from tiermem.modes import AffectEngine, ModeContext, ModeGuard, ModeMachine


def _state(mode=Mode.GUARDED, valence=0.0, **discrete):
    base = initialize_state(VAD())
    return replace(base, mode=mode, current=VAD(valence, 0.0, 0.0), discrete=DiscreteAffects(**discrete))


class TestModeMachine(unittest.TestCase):
    def setUp(self):
        self.machine = ModeMachine()

    def test_no_guard_matches_keeps_mode(self):
        result = self.machine.maybe_transition(_state())
        self.assertFalse(result.transitioned)
        self.assertEqual(result.mode, Mode.GUARDED)
        self.assertIsNone(result.reason)

    def test_comfort_opens_up_guarded_character(self):
        result = self.machine.maybe_transition(_state(valence=0.3, comfort=0.5))
        self.assertTrue(result.transitioned)
        self.assertEqual(result.previous, Mode.GUARDED)
        self.assertEqual(result.mode, Mode.OPENING_UP)
        self.assertEqual(result.reason, "comfort_gain")

    def test_trust_warms_opening_up_character(self):
        result = self.machine.maybe_transition(_state(Mode.OPENING_UP, valence=0.4, trust=0.6))
        self.assertEqual(result.mode, Mode.WARM)

    def test_negative_affect_causes_distress_from_any_mode(self):
        for mode in (Mode.GUARDED, Mode.OPENING_UP, Mode.WARM):
            result = self.machine.maybe_transition(_state(mode, valence=-0.5, irritation=0.6))
            self.assertTrue(result.transitioned)
            self.assertEqual(result.mode, Mode.DISTRESSED)

    def test_distressed_recovers_to_guarded(self):
        result = self.machine.maybe_transition(_state(Mode.DISTRESSED, valence=0.05))
        self.assertEqual(result.mode, Mode.GUARDED)
        self.assertEqual(result.reason, "recovered")

    def test_matching_guard_for_current_mode_is_not_a_transition(self):
        result = self.machine.maybe_transition(_state(Mode.DISTRESSED, valence=-0.5, anxiety=0.9))
        self.assertFalse(result.transitioned)
        self.assertEqual(result.mode, Mode.DISTRESSED)
        self.assertEqual(result.reason, "negative_affect")

    def test_first_matching_guard_wins(self):
        machine = ModeMachine(
            [
                ModeGuard("first", Mode.WARM, lambda state, ctx: True),
                ModeGuard("second", Mode.DISTRESSED, lambda state, ctx: True),
            ]
        )
        result = machine.maybe_transition(_state())
        self.assertEqual(result.mode, Mode.WARM)
        self.assertEqual(result.reason, "first")

    def test_guards_see_context_extras(self):
        machine = ModeMachine(
            [ModeGuard("flagged", Mode.DISTRESSED, lambda state, ctx: ctx.extras.get("panic", False))]
        )
        self.assertFalse(machine.maybe_transition(_state()).transitioned)
        result = machine.maybe_transition(_state(), ModeContext(extras={"panic": True}))
        self.assertTrue(result.transitioned)

    def test_apply_updates_state_mode(self):
        state, result = self.machine.apply(_state(valence=0.3, comfort=0.5))
        self.assertTrue(result.transitioned)
        self.assertEqual(state.mode, Mode.OPENING_UP)


class TestAffectEngine(unittest.TestCase):
    def test_sustained_kindness_warms_character(self):
        engine = AffectEngine()
        state = initialize_state(VAD(), PersonalityTraits())
        text = "Thank you, that is awesome. I appreciate it."

        first, transition = engine.step(state, text)
        self.assertEqual(transition.mode, Mode.OPENING_UP)
        self.assertEqual(first.state.mode, Mode.OPENING_UP)

        second, transition = engine.step(first.state, text)
        self.assertEqual(transition.previous, Mode.OPENING_UP)
        self.assertEqual(second.state.mode, Mode.WARM)

    def test_hostility_distresses_character(self):
        engine = AffectEngine()
        state = initialize_state(VAD(), PersonalityTraits(volatility=0.8, sensitivity=0.8))
        for _ in range(3):
            result, _ = engine.step(state, "You stupid idiot, I will hurt you!")
            state = result.state
        self.assertEqual(state.mode, Mode.DISTRESSED)
        self.assertLess(state.current.valence, state.baseline.valence)


if __name__ == "__main__":
    unittest.main()
