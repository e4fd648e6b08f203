import unittest
import chex
import jax
import jax.numpy as jnp
import numpy as onp
from numpy.testing import assert_allclose

from klilqrax import (
    KLConfig,
    DualBracket,
    GlobalDualUpdate,
    PerStepDualUpdate,
    AdamOptimizer,
    make_dual_update,
)
from klilqrax.dual import adam_init, adam_update

jax.config.update("jax_enable_x64", True)  # double precision


class TestDualBracket(unittest.TestCase):
    """Escalation and saturation of the dual variable"""

    def test_from_config(self):
        config = KLConfig(eta_bracket=(1e-3, 2.0, 50.0), del0=0.5)
        scalar = DualBracket.from_config(config)
        self.assertEqual(jnp.shape(scalar.eta), ())
        per_step = DualBracket.from_config(config, horizon=4)
        chex.assert_trees_all_close(per_step.eta, jnp.full(4, 2.0))
        chex.assert_trees_all_close(per_step.upper, jnp.full(4, 50.0))
        chex.assert_trees_all_close(per_step.delta, jnp.full(4, 0.5))

    def test_escalation_doubles_increment(self):
        bracket = DualBracket.from_config(KLConfig())
        bracket.escalate()
        self.assertAlmostEqual(float(bracket.eta), 1.0001)
        self.assertAlmostEqual(float(bracket.delta), 2e-4)
        bracket.escalate()
        self.assertAlmostEqual(float(bracket.eta), 1.0003)
        self.assertAlmostEqual(float(bracket.delta), 4e-4)
        bracket.reset_escalation(1e-4)
        self.assertAlmostEqual(float(bracket.delta), 1e-4)

    def test_escalate_single_step(self):
        bracket = DualBracket.from_config(KLConfig(del0=0.1), horizon=3)
        bracket.escalate(1)
        bracket.escalate(1)
        assert_allclose(bracket.eta, [1.0, 1.3, 1.0])
        assert_allclose(bracket.delta, [0.1, 0.4, 0.1])

    def test_saturated(self):
        bracket = DualBracket.from_config(KLConfig(eta_bracket=(1e-8, 1.0, 2.0), del0=1.5))
        self.assertFalse(bracket.saturated())
        bracket.escalate()
        self.assertTrue(bracket.saturated())
        per_step = DualBracket.from_config(KLConfig(eta_bracket=(1e-8, 1.0, 2.0), del0=1.5), horizon=2)
        per_step.escalate(0)
        # every step must exceed its ceiling
        self.assertFalse(per_step.saturated())
        per_step.escalate(1)
        self.assertTrue(per_step.saturated())


class TestGlobalDualUpdate(unittest.TestCase):
    """Geometric bisection against the mean divergence"""

    def setUp(self):
        self.config = KLConfig(kl_step=1.0, eta_bracket=(1e-8, 1.0, 1e16))
        self.strategy = GlobalDualUpdate(self.config)
        self.bracket = self.strategy.init_bracket(horizon=5)

    def test_within_tolerance(self):
        self.assertTrue(self.strategy.update(self.bracket, jnp.full(5, 1.05), 1))
        self.assertEqual(float(self.bracket.eta), 1.0)

    def test_eta_too_big(self):
        self.assertFalse(self.strategy.update(self.bracket, jnp.full(5, 0.5), 1))
        self.assertEqual(float(self.bracket.upper), 1.0)
        # geometric mean 1e-4 is limited to a factor of ten
        self.assertAlmostEqual(float(self.bracket.eta), 0.1)

    def test_eta_too_small(self):
        self.assertFalse(self.strategy.update(self.bracket, jnp.full(5, 3.0), 1))
        self.assertEqual(float(self.bracket.lower), 1.0)
        self.assertAlmostEqual(float(self.bracket.eta), 10.0)

    def test_bisection_narrows(self):
        self.strategy.update(self.bracket, jnp.full(5, 3.0), 1)
        self.strategy.update(self.bracket, jnp.full(5, 0.2), 2)
        # lower 1, upper 10
        self.assertAlmostEqual(float(self.bracket.eta), onp.sqrt(10.0))
        self.assertLess(float(self.bracket.lower), float(self.bracket.eta))
        self.assertLess(float(self.bracket.eta), float(self.bracket.upper))

    def test_unconstrained(self):
        strategy = GlobalDualUpdate(KLConfig(kl_step=0.0))
        bracket = strategy.init_bracket(5)
        self.assertTrue(strategy.update(bracket, jnp.full(5, 100.0), 1))
        self.assertEqual(float(bracket.eta), 1.0)

    def test_divergence_saturates(self):
        strategy = GlobalDualUpdate(KLConfig(eta_bracket=(1e-8, 1.0, 2.0), del0=0.6))
        bracket = strategy.init_bracket(5)
        self.assertFalse(strategy.on_divergence(bracket, 3))
        self.assertTrue(strategy.on_divergence(bracket, 3))


class TestPerStepDualUpdate(unittest.TestCase):
    """Adam ascent of log(eta) per time step"""

    def test_positive_violation_increases_eta(self):
        config = KLConfig(kl_step=1.0, constrain_per_step=True, gd_alpha=0.05, eta_bracket=(1e-8, 1.0, 1.2))
        strategy = PerStepDualUpdate(config)
        bracket = strategy.init_bracket(3)
        log_etas = [onp.log(onp.asarray(bracket.eta))]
        for iteration in range(1, 11):
            satisfied = strategy.update(bracket, jnp.full(3, 5.0), iteration)
            self.assertFalse(satisfied)
            log_etas.append(onp.log(onp.asarray(bracket.eta)))
        steps = onp.diff(onp.stack(log_etas), axis=0)
        self.assertTrue(bool(onp.all(steps >= 0.0)))
        self.assertAlmostEqual(float(steps[0, 0]), 0.05, places=6)
        assert_allclose(bracket.eta, onp.full(3, 1.2))

    def test_negative_violation_decreases_eta(self):
        config = KLConfig(kl_step=1.0, constrain_per_step=True, gd_alpha=0.1)
        strategy = PerStepDualUpdate(config)
        bracket = strategy.init_bracket(2)
        strategy.update(bracket, jnp.array([0.1, 3.0]), 1)
        self.assertLess(float(bracket.eta[0]), 1.0)
        self.assertGreater(float(bracket.eta[1]), 1.0)

    def test_satisfaction_criterion(self):
        config = KLConfig(kl_step=1.0, constrain_per_step=True)
        strategy = PerStepDualUpdate(config)
        bracket = strategy.init_bracket(2)
        self.assertTrue(strategy.update(bracket, jnp.array([0.5, 1.5]), 1))
        self.assertFalse(strategy.update(bracket, jnp.array([0.5, 2.5]), 2))
        self.assertFalse(strategy.update(bracket, jnp.array([1.2, 1.2]), 3))

    def test_divergence_escalates_offending_step(self):
        config = KLConfig(constrain_per_step=True, del0=0.1, eta_bracket=(1e-8, 1.0, 1.25))
        strategy = PerStepDualUpdate(config)
        bracket = strategy.init_bracket(3)
        self.assertFalse(strategy.on_divergence(bracket, 2))
        assert_allclose(bracket.eta, [1.0, 1.1, 1.0])
        self.assertTrue(strategy.on_divergence(bracket, 2))
        assert_allclose(bracket.eta, [1.0, 1.3, 1.0])
        # increments restart every outer iteration
        strategy.begin_iteration(bracket)
        assert_allclose(bracket.delta, onp.full(3, 0.1))
        self.assertFalse(strategy.saturated(bracket))

    def test_make_dual_update(self):
        self.assertIsInstance(make_dual_update(KLConfig()), GlobalDualUpdate)
        self.assertIsInstance(make_dual_update(KLConfig(constrain_per_step=True)), PerStepDualUpdate)


class TestAdam(unittest.TestCase):
    """Adam primitive"""

    def test_first_step_is_alpha(self):
        x = jnp.array([0.0, 1.0])
        grad = jnp.array([2.0, -0.5])
        new_x, state = adam_update(adam_init(x), x, grad, 1, alpha=0.1)
        assert_allclose(new_x, [-0.1, 1.1], rtol=1e-6)
        assert_allclose(state.m, 0.1 * grad)
        assert_allclose(state.v, 0.001 * grad**2)

    def test_optimizer_keeps_state(self):
        opt = AdamOptimizer(alpha=0.1)
        x = jnp.zeros(2)
        grad = jnp.ones(2)
        x = opt(x, grad, 1)
        x = opt(x, grad, 2)
        # constant gradient gives steps of alpha
        assert_allclose(x, [-0.2, -0.2], rtol=1e-6)
        self.assertIsNotNone(opt.state)


if __name__ == "__main__":
    unittest.main()
