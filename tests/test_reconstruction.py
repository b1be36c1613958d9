import math
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import torch

import fdkct.backprojection
import fdkct.filters
import fdkct.weighting
from fdkct import (
    ConfigurationError,
    FDKReconstruction,
    InvalidParameterError,
    ProjectionGeometry,
    ProjectionStack,
    ReconstructionCancelled,
    ReconstructionConfig,
    ReconstructionState,
    ReconstructionStateError,
    VarianceReconstruction,
    VolumeGeometry,
    circular_geometry,
)
from fdkct.reconstruction import _RunState

from conftest import central_disc, sphere_projections


PIPELINE = [
    ReconstructionState.GEOMETRY_BOUND,
    ReconstructionState.WEIGHTING,
    ReconstructionState.RAMP_FILTERING,
    ReconstructionState.BACKPROJECTING,
    ReconstructionState.COMPLETE,
]


# ============================================================================
# State machine
# ============================================================================

@pytest.mark.parametrize("pipeline", [FDKReconstruction, VarianceReconstruction])
def test_states_are_entered_in_order(pipeline, small_geometry, small_grid, small_stack):
    states = []
    volume = pipeline(small_geometry, small_grid).compute(small_stack, state_callback=states.append)
    assert states == PIPELINE
    assert volume.data.shape == small_grid.array_shape


def test_illegal_transitions_are_rejected():
    run = _RunState("test")
    with pytest.raises(ReconstructionStateError):
        run.advance(ReconstructionState.WEIGHTING)
    run.advance(ReconstructionState.GEOMETRY_BOUND)
    with pytest.raises(ReconstructionStateError):
        run.advance(ReconstructionState.GEOMETRY_BOUND)
    with pytest.raises(ReconstructionStateError):
        run.advance(ReconstructionState.UNINITIALIZED)


def test_cancelled_before_start(small_geometry, small_grid, small_stack):
    event = threading.Event()
    event.set()
    states = []
    with pytest.raises(ReconstructionCancelled):
        FDKReconstruction(small_geometry, small_grid).compute(small_stack, event, states.append)
    assert states == []


@pytest.mark.parametrize("pipeline", [FDKReconstruction, VarianceReconstruction])
def test_cancelled_between_stages(pipeline, small_geometry, small_grid, small_stack):
    event = threading.Event()
    states = []

    def record(state):
        states.append(state)
        if state is ReconstructionState.RAMP_FILTERING:
            event.set()

    with pytest.raises(ReconstructionCancelled):
        pipeline(small_geometry, small_grid).compute(small_stack, event, record)
    assert states == PIPELINE[:3]


# ============================================================================
# Validation
# ============================================================================

@pytest.mark.parametrize("pipeline", [FDKReconstruction, VarianceReconstruction])
def test_count_mismatch_fails_before_allocation(pipeline, monkeypatch, small_grid, small_stack):
    allocations = []

    def counting_allocate(shape, dtype=torch.float32, what="buffer"):
        allocations.append(what)
        return torch.zeros(shape, dtype=dtype)

    for module in (fdkct.weighting, fdkct.filters, fdkct.backprojection):
        monkeypatch.setattr(module, "_allocate", counting_allocate)

    states = []
    geometry = circular_geometry(23, 100.0, 200.0)
    with pytest.raises(ConfigurationError):
        pipeline(geometry, small_grid).compute(small_stack, state_callback=states.append)
    assert allocations == []
    assert states == []


def test_allocation_hook_sees_a_complete_run(monkeypatch, small_geometry, small_grid, small_stack):
    allocations = []
    original = fdkct.backprojection._allocate

    def counting_allocate(shape, dtype=torch.float32, what="buffer"):
        allocations.append(what)
        return original(shape, dtype, what)

    monkeypatch.setattr(fdkct.backprojection, "_allocate", counting_allocate)
    FDKReconstruction(small_geometry, small_grid).compute(small_stack)
    assert allocations == ["volume"]


def test_geometry_is_bound_at_construction(small_grid, small_stack):
    geometry = circular_geometry(24, 100.0, 200.0)
    fdk = FDKReconstruction(geometry, small_grid)
    geometry.add_projection(0.0, 100.0, 200.0)
    assert fdk.compute(small_stack).data.shape == small_grid.array_shape


def test_invalid_constructor_arguments(small_geometry, small_grid):
    with pytest.raises(ConfigurationError):
        FDKReconstruction(small_geometry, (8, 8, 2))
    with pytest.raises(ConfigurationError):
        FDKReconstruction(small_geometry, small_grid, {"filter_type": "hann"})


def test_negative_variances_are_rejected(small_geometry, small_grid):
    stack = ProjectionStack.centered(-torch.ones(24, 4, 32))
    with pytest.raises(InvalidParameterError):
        VarianceReconstruction(small_geometry, small_grid).compute(stack)


@pytest.mark.parametrize("bad", [float("nan"), float("inf")])
def test_non_finite_variances_are_rejected(bad, monkeypatch, small_geometry, small_grid):
    allocations = []
    monkeypatch.setattr(fdkct.weighting, "_allocate", lambda *args, **kwargs: allocations.append(args))
    data = torch.ones(24, 4, 32)
    data[3, 1, 7] = bad
    with pytest.raises(InvalidParameterError, match="finite"):
        VarianceReconstruction(small_geometry, small_grid).compute(ProjectionStack.centered(data))
    assert allocations == []


# ============================================================================
# Numerical properties
# ============================================================================

def test_fdk_is_linear(small_geometry, small_grid, small_stack, hann_config, generator):
    fdk = FDKReconstruction(small_geometry, small_grid, hann_config)
    a = small_stack
    b = small_stack.with_data(torch.rand(24, 4, 32, generator=generator))
    both = small_stack.with_data(a.data + b.data)

    combined = fdk.compute(a).data + fdk.compute(b).data
    direct = fdk.compute(both).data
    scale = direct.abs().max().item()
    torch.testing.assert_close(combined, direct, rtol=0, atol=1e-5 * scale)


@pytest.mark.parametrize("pipeline", [FDKReconstruction, VarianceReconstruction])
@pytest.mark.parametrize("filter_type", ["ram-lak", "hann", "hamming", "cosine"])
def test_zero_input_gives_zero_volume(pipeline, filter_type, small_geometry, small_grid):
    stack = ProjectionStack.centered(torch.zeros(24, 4, 32))
    config = ReconstructionConfig(filter_type=filter_type, short_scan=True)
    volume = pipeline(small_geometry, small_grid, config).compute(stack)
    assert torch.count_nonzero(volume.data) == 0


def test_variance_scales_linearly(small_geometry, small_grid, small_stack, hann_config):
    variance = VarianceReconstruction(small_geometry, small_grid, hann_config)
    rates = small_stack.with_data(100.0 + 10.0 * small_stack.data)
    k = 3.5
    base = variance.compute(rates).data
    scaled = variance.compute(rates.with_data(k * rates.data)).data
    assert base.min().item() > 0.0
    torch.testing.assert_close(scaled, k * base, rtol=1e-5, atol=0)


def test_sphere_reconstruction():
    geometry = circular_geometry(90, 200.0, 400.0)
    stack = sphere_projections(geometry, 8, 128, radius=20.0)
    grid = VolumeGeometry.centered((32, 32, 1))
    volume = FDKReconstruction(geometry, grid).compute(stack)

    inside = central_disc(volume, 10.0)
    assert inside.mean() == pytest.approx(1.0, abs=0.05)
    assert inside.std() < 0.1


def test_uneven_full_scan_sphere_reconstruction():
    step = math.radians(4.0)
    geometry = ProjectionGeometry()
    # 90 views with three adjacent ones missing leave a 16 degree hole
    for angle in np.delete(np.arange(90) * step, [20, 21, 22]):
        geometry.add_projection(angle, 200.0, 400.0)
    stack = sphere_projections(geometry, 8, 128, radius=20.0)
    grid = VolumeGeometry.centered((32, 32, 1))

    for config in (ReconstructionConfig(), ReconstructionConfig(short_scan=True)):
        volume = FDKReconstruction(geometry, grid, config).compute(stack)
        assert central_disc(volume, 10.0).mean() == pytest.approx(1.0, abs=0.05)


def test_short_scan_sphere_reconstruction():
    sid, sdd = 200.0, 400.0
    half_fan = math.atan(64.0 / sdd)
    arc = math.pi + 2.0 * half_fan + 0.1
    geometry = ProjectionGeometry()
    for angle in np.linspace(0.0, arc, 100):
        geometry.add_projection(angle, sid, sdd)
    stack = sphere_projections(geometry, 8, 128, radius=20.0)
    grid = VolumeGeometry.centered((32, 32, 1))

    volume = FDKReconstruction(geometry, grid, ReconstructionConfig(short_scan=True)).compute(stack)
    assert central_disc(volume, 10.0).mean() == pytest.approx(1.0, abs=0.08)


def test_variance_matches_monte_carlo(small_geometry, small_grid, small_stack, hann_config, generator):
    """Empirical variance of noisy FDK reconstructions equals the analytic variance."""
    rates = small_stack.with_data(200.0 * torch.exp(-0.1 * small_stack.data))
    fdk = FDKReconstruction(small_geometry, small_grid, hann_config)
    analytic = VarianceReconstruction(small_geometry, small_grid, hann_config).compute(rates).data.double()

    n_realizations = 500
    samples = torch.stack([
        fdk.compute(rates.with_data(torch.poisson(rates.data, generator=generator))).data.double()
        for _ in range(n_realizations)
    ])
    empirical = samples.var(dim=0)

    ratio = empirical / analytic
    assert ratio.mean().item() == pytest.approx(1.0, abs=0.08)
    assert ratio.min().item() > 0.65
    assert ratio.max().item() < 1.35


# ============================================================================
# Concurrency
# ============================================================================

def test_concurrent_runs_match_serial_runs(small_geometry, small_grid, small_stack, hann_config):
    rates = small_stack.with_data(100.0 + 10.0 * small_stack.data)
    fdk = FDKReconstruction(small_geometry, small_grid, hann_config)
    variance = VarianceReconstruction(small_geometry, small_grid, hann_config)
    expected_volume = fdk.compute(small_stack).data
    expected_variance = variance.compute(rates).data

    with ThreadPoolExecutor(max_workers=4) as pool:
        volumes = [pool.submit(fdk.compute, small_stack) for _ in range(4)]
        variances = [pool.submit(variance.compute, rates) for _ in range(4)]
        for future in volumes:
            assert torch.equal(future.result().data, expected_volume)
        for future in variances:
            assert torch.equal(future.result().data, expected_variance)
