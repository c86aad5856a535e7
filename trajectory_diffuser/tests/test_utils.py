"""
Test the cosine schedule, extract() and apply_conditioning().

Run with:
    python -m trajectory_diffuser.tests.test_utils
"""

import dataclasses

import torch

DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
print(f"Testing on device: {DEVICE}")


def test_schedule_bounds():
    """betas stay in [0, 0.999] and alphas_cumprod strictly decreases."""
    print("\n" + "=" * 60)
    print("Test: make_schedule() bounds")
    print("=" * 60)

    from trajectory_diffuser.common.utils import make_schedule

    for n_timesteps in [2, 3, 10, 100, 1000]:
        for s in [0.0, 0.008, 0.05, 0.1]:
            schedule = make_schedule(n_timesteps, s)
            betas = schedule.betas
            assert betas.shape == (n_timesteps,), f"Expected {n_timesteps} betas, got {betas.shape}"
            assert betas.dtype == torch.float32, f"Expected float32 betas, got {betas.dtype}"
            assert (betas >= 0).all() and (betas <= 0.999).all(), \
                f"betas out of [0, 0.999] for n={n_timesteps}, s={s}"
            ac = schedule.alphas_cumprod
            assert (ac[1:] < ac[:-1]).all(), \
                f"alphas_cumprod not strictly decreasing for n={n_timesteps}, s={s}"
            assert torch.isfinite(schedule.posterior_log_variance_clipped).all(), \
                "posterior log variance must be finite"

    print("✓ betas in [0, 0.999], alphas_cumprod strictly decreasing")


def test_schedule_cosine_values():
    """T=1000, s=0.008: first beta near 1e-4, last beta clipped at 0.999."""
    print("\n" + "=" * 60)
    print("Test: cosine_beta_schedule() values")
    print("=" * 60)

    from trajectory_diffuser.common.utils import cosine_beta_schedule, make_schedule

    betas = cosine_beta_schedule(1000, s=0.008)
    print(f"  betas[0] = {betas[0].item():.6e}, betas[-1] = {betas[-1].item():.6f}")

    assert abs(betas[0].item() - 1e-4) <= 1e-4, f"betas[0] = {betas[0].item()} too far from 1e-4"
    assert 0.99 < betas[-1].item() <= 0.999 + 1e-6, f"Last beta should be clipped at 0.999, got {betas[-1].item()}"
    assert (betas[1:] >= betas[:-1]).all(), "betas should be non-decreasing"
    print("✓ First beta near 1e-4, last beta clipped, betas non-decreasing")

    schedule = make_schedule(1000)
    assert schedule.alphas_cumprod_prev[0].item() == 1.0, "alphas_cumprod_prev must start at 1"
    assert torch.allclose(schedule.alphas_cumprod_prev[1:], schedule.alphas_cumprod[:-1]), \
        "alphas_cumprod_prev must be shifted alphas_cumprod"
    assert torch.allclose(
        schedule.sqrt_recip_alphas_cumprod, schedule.alphas_cumprod ** -0.5, rtol=1e-5
    ), "sqrt_recip_alphas_cumprod mismatch"
    assert schedule.posterior_variance[0].item() == 0.0, "Posterior variance is 0 at t=0"
    assert abs(schedule.posterior_log_variance_clipped[0].item() - torch.log(torch.tensor(1e-20)).item()) < 1e-3, \
        "Posterior log variance must be clipped at 1e-20"
    print("✓ Derived schedule terms consistent")


def test_schedule_config_errors():
    """n_timesteps < 2 raises ConfigError."""
    print("\n" + "=" * 60)
    print("Test: make_schedule() configuration errors")
    print("=" * 60)

    from trajectory_diffuser.common.utils import make_schedule
    from trajectory_diffuser.errors import ConfigError

    for n_timesteps in [1, 0, -5]:
        try:
            make_schedule(n_timesteps)
        except ConfigError:
            print(f"✓ n_timesteps={n_timesteps} rejected")
        else:
            raise AssertionError(f"n_timesteps={n_timesteps} should raise ConfigError")

    assert issubclass(ConfigError, ValueError), "ConfigError should be a ValueError"


def test_schedule_float32_resolution():
    """Betas below float32 resolution are reported as a precision limit."""
    print("\n" + "=" * 60)
    print("Test: make_schedule() float32 resolution")
    print("=" * 60)

    from trajectory_diffuser.common.utils import cosine_beta_schedule, make_schedule
    from trajectory_diffuser.errors import ConfigError

    betas = cosine_beta_schedule(20000, s=0.0)
    assert betas[0].item() < torch.finfo(torch.float32).eps, "First beta is below float32 resolution"

    try:
        make_schedule(20000, s=0.0)
    except ConfigError as e:
        assert "float32 resolution" in str(e), f"Precision limit not named: {e}"
        assert "degenerate" not in str(e), "A valid s must not be reported as degenerate"
        print(f"✓ Rejected: {e}")
    else:
        raise AssertionError("Flat float32 alphas_cumprod should raise ConfigError")


def test_schedule_immutable():
    """DiffusionSchedule is frozen; to() returns a new instance."""
    print("\n" + "=" * 60)
    print("Test: DiffusionSchedule immutability")
    print("=" * 60)

    from trajectory_diffuser.common.utils import make_schedule

    schedule = make_schedule(10)
    try:
        schedule.betas = torch.zeros(10)
    except dataclasses.FrozenInstanceError:
        print("✓ Assignment rejected")
    else:
        raise AssertionError("DiffusionSchedule fields should not be assignable")

    moved = schedule.to(DEVICE)
    assert moved is not schedule, "to() should return a new schedule"
    assert moved.n_timesteps == 10
    assert moved.betas.device.type == torch.device(DEVICE).type
    print(f"✓ to({DEVICE}) returns a new schedule")


def test_extract():
    """extract() gathers per-sample values and reshapes for broadcasting."""
    print("\n" + "=" * 60)
    print("Test: extract()")
    print("=" * 60)

    from trajectory_diffuser.common.utils import extract

    a = torch.arange(10, dtype=torch.float32)
    t = torch.tensor([0, 3, 9], device=DEVICE)
    out = extract(a, t, (3, 8, 5))

    assert out.shape == (3, 1, 1), f"Expected shape (3, 1, 1), got {out.shape}"
    assert out.device == t.device, "Result must live on t's device"
    assert out.flatten().tolist() == [0.0, 3.0, 9.0]
    print(f"✓ extract shape {tuple(out.shape)} on {out.device}")


def test_apply_conditioning_identity():
    """Empty conditioning is the identity."""
    print("\n" + "=" * 60)
    print("Test: apply_conditioning() with no conditions")
    print("=" * 60)

    from trajectory_diffuser.common.utils import apply_conditioning

    x = torch.randn(2, 4, 3, device=DEVICE)
    out = apply_conditioning(x, {}, action_dim=1)
    assert torch.equal(out, x), "Empty conditioning must leave x unchanged"
    print("✓ Identity on empty conditioning")


def test_apply_conditioning_scenario():
    """Zero trajectory conditioned on {0: [1, 1]} sums to 4 at the pinned slots."""
    print("\n" + "=" * 60)
    print("Test: apply_conditioning() concrete scenario")
    print("=" * 60)

    from trajectory_diffuser.common.utils import apply_conditioning

    x = torch.zeros(2, 4, 3, device=DEVICE)
    cond = {0: torch.ones(2, 2, device=DEVICE)}
    out = apply_conditioning(x, cond, action_dim=1)

    assert out[:, 0, 1:].sum().item() == 4.0, f"Expected sum 4, got {out[:, 0, 1:].sum().item()}"
    mask = torch.ones_like(out, dtype=torch.bool)
    mask[:, 0, 1:] = False
    assert (out[mask] == 0).all(), "All other entries must stay 0"
    assert (x == 0).all(), "Input must not be modified in place"
    print("✓ Conditioned slots sum to 4, everything else 0, input untouched")


def test_apply_conditioning_preserves_other_positions():
    """Unconditioned positions are bit-identical and still receive gradients."""
    print("\n" + "=" * 60)
    print("Test: apply_conditioning() pass-through and gradients")
    print("=" * 60)

    from trajectory_diffuser.common.utils import apply_conditioning

    action_dim, horizon = 2, 8
    x = torch.randn(3, horizon, 5, device=DEVICE, requires_grad=True)
    cond = {
        0: torch.randn(3, 3, device=DEVICE),
        horizon - 1: torch.randn(3, device=DEVICE),
    }
    out = apply_conditioning(x, cond, action_dim)

    for t, val in cond.items():
        assert torch.equal(out[:, t, action_dim:], val.expand(3, -1)), f"Condition at t={t} not applied"
        assert torch.equal(out[:, t, :action_dim], x[:, t, :action_dim]), "Actions must pass through"
    assert torch.equal(out[:, 1:horizon - 1], x[:, 1:horizon - 1]), "Unconditioned steps must pass through"

    out.sum().backward()
    expected = torch.ones_like(x)
    for t in cond:
        expected[:, t, action_dim:] = 0
    assert torch.equal(x.grad, expected), "Gradient must flow to unconditioned entries only"
    print("✓ Pass-through is exact and differentiable")


def test_apply_conditioning_shape_errors():
    """Out-of-horizon keys, wrong widths and mismatched batches raise ShapeError."""
    print("\n" + "=" * 60)
    print("Test: apply_conditioning() shape errors")
    print("=" * 60)

    from trajectory_diffuser.common.utils import apply_conditioning
    from trajectory_diffuser.errors import ShapeError

    x = torch.zeros(2, 4, 3, device=DEVICE)
    bad_conditions = [
        {4: torch.ones(2, 2, device=DEVICE)},
        {-1: torch.ones(2, 2, device=DEVICE)},
        {0: torch.ones(2, 3, device=DEVICE)},
        {0: torch.ones(3, 2, device=DEVICE)},
    ]
    for cond in bad_conditions:
        try:
            apply_conditioning(x, cond, action_dim=1)
        except ShapeError as e:
            print(f"✓ Rejected: {e}")
        else:
            raise AssertionError(f"Conditioning {list(cond)} should raise ShapeError")


def run_all_tests():
    """Run all utility tests."""
    print("\n" + "=" * 60)
    print("Trajectory Diffuser Utils Test Suite")
    print("=" * 60)

    tests = [
        ("make_schedule() bounds", test_schedule_bounds),
        ("cosine_beta_schedule() values", test_schedule_cosine_values),
        ("make_schedule() errors", test_schedule_config_errors),
        ("make_schedule() float32 resolution", test_schedule_float32_resolution),
        ("DiffusionSchedule immutability", test_schedule_immutable),
        ("extract()", test_extract),
        ("apply_conditioning() identity", test_apply_conditioning_identity),
        ("apply_conditioning() scenario", test_apply_conditioning_scenario),
        ("apply_conditioning() pass-through", test_apply_conditioning_preserves_other_positions),
        ("apply_conditioning() errors", test_apply_conditioning_shape_errors),
    ]

    passed = 0
    failed = 0

    for name, test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as e:
            print(f"\n✗ FAILED: {name}")
            print(f"  Error: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print("\n" + "=" * 60)
    print(f"Test Results: {passed} passed, {failed} failed")
    print("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    exit(0 if success else 1)
