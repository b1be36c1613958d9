import math

import numpy as np
import pytest

from fdkct import (
    GeometryRecord,
    InvalidGeometryError,
    ProjectionGeometry,
    ProjectionStack,
    VolumeGeometry,
    angular_gaps,
    angular_range,
    angular_weights,
    circular_geometry,
    is_full_scan,
)


def test_add_projection_appends_in_order():
    geometry = ProjectionGeometry()
    geometry.add_projection(0.0, 600.0, 1200.0)
    geometry.add_projection(90.0, 600.0, 1200.0, offset_u=1.5, degrees=True)
    assert geometry.record_count() == 2
    assert geometry[1].angle == pytest.approx(math.pi / 2)
    assert geometry[1].offset_u == 1.5
    assert geometry[0].magnification == pytest.approx(2.0)


@pytest.mark.parametrize("sid, sdd", [(600.0, 600.0), (600.0, 500.0), (0.0, 100.0), (-1.0, 100.0)])
def test_add_projection_rejects_invalid_distances(sid, sdd):
    geometry = ProjectionGeometry()
    with pytest.raises(InvalidGeometryError):
        geometry.add_projection(0.0, sid, sdd)
    assert geometry.record_count() == 0


def test_add_projection_rejects_non_finite_values():
    geometry = ProjectionGeometry()
    with pytest.raises(InvalidGeometryError):
        geometry.add_projection(float("nan"), 600.0, 1200.0)
    with pytest.raises(InvalidGeometryError):
        geometry.add_projection(0.0, 600.0, float("inf"))
    with pytest.raises(InvalidGeometryError):
        geometry.add_projection("north", 600.0, 1200.0)


def test_invalid_geometry_error_is_value_error():
    with pytest.raises(ValueError):
        GeometryRecord(0.0, 100.0, 50.0)


def test_snapshot_is_immutable_and_detached():
    geometry = circular_geometry(4, 100.0, 200.0)
    snapshot = geometry.snapshot()
    geometry.add_projection(0.1, 100.0, 200.0)

    assert len(snapshot) == 4
    assert geometry.record_count() == 5
    with pytest.raises(AttributeError):
        snapshot.angles = np.zeros(4)
    with pytest.raises(ValueError):
        snapshot.sid[0] = 1.0
    np.testing.assert_allclose(snapshot.isocenter_scale, 0.5)


def test_detector_frames_follow_rotation_convention():
    snapshot = circular_geometry(4, 100.0, 250.0).snapshot()
    src_pos, det_center, det_u_vec, det_v_vec = snapshot.detector_frames()

    np.testing.assert_allclose(src_pos[0], [0.0, 100.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(det_center[0], [0.0, -150.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(src_pos[1], [-100.0, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(det_u_vec[1], [0.0, 1.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(det_v_vec, np.tile([0.0, 0.0, 1.0], (4, 1)))
    # source to detector distance
    np.testing.assert_allclose(np.linalg.norm(det_center - src_pos, axis=1), 250.0)


def test_circular_geometry_samples_without_end_point():
    geometry = circular_geometry(8, 100.0, 200.0, start_angle=0.5)
    angles = geometry.snapshot().angles
    np.testing.assert_allclose(np.diff(angles), 2 * math.pi / 8)
    assert angles[0] == 0.5

    with pytest.raises(InvalidGeometryError):
        circular_geometry(0, 100.0, 200.0)


def test_uniform_full_scan_weights_are_pi_over_n():
    angles = np.linspace(0.0, 2 * math.pi, 90, endpoint=False)
    assert is_full_scan(angles)
    np.testing.assert_allclose(angular_gaps(angles), 2 * math.pi / 90)
    np.testing.assert_allclose(angular_weights(angles), math.pi / 90)


def test_angular_weights_follow_input_order():
    angles = np.linspace(0.0, 2 * math.pi, 12, endpoint=False)
    shuffled = angles[[3, 0, 11, 5, 1, 2, 4, 6, 7, 8, 9, 10]]
    np.testing.assert_allclose(angular_weights(shuffled), math.pi / 12)


def test_short_scan_weights_cap_wrap_around_gap():
    step = math.radians(2.0)
    angles = np.arange(100) * step
    assert not is_full_scan(angles)
    weights = angular_weights(angles)
    np.testing.assert_allclose(weights, 0.5 * step)
    assert weights.sum() == pytest.approx(0.5 * 100 * step)


def test_angular_range_finds_scan_start_after_largest_gap():
    step = math.radians(2.0)
    angles = np.mod(np.arange(100) * step + 5.5, 2 * math.pi)
    covered, first = angular_range(angles)
    assert covered == pytest.approx(2 * math.pi - (2 * math.pi - 99 * step))
    assert first == 0


def test_projection_stack_coordinates():
    stack = ProjectionStack.centered(np.zeros((2, 4, 6)), (0.5, 2.0))
    np.testing.assert_allclose(stack.u_coordinates(), [-1.25, -0.75, -0.25, 0.25, 0.75, 1.25])
    np.testing.assert_allclose(stack.v_coordinates(), [-3.0, -1.0, 1.0, 3.0])
    assert (stack.projection_count, stack.rows, stack.columns) == (2, 4, 6)


@pytest.mark.parametrize("shape", [(4, 6), (0, 4, 6), (1, 2, 3, 4)])
def test_projection_stack_rejects_bad_shapes(shape):
    with pytest.raises(InvalidGeometryError):
        ProjectionStack(np.zeros(shape))


def test_projection_stack_rejects_bad_spacing():
    with pytest.raises(InvalidGeometryError):
        ProjectionStack(np.zeros((1, 2, 2)), spacing=(1.0, 0.0))


def test_volume_geometry_shapes():
    grid = VolumeGeometry.centered((4, 3, 2), (1.0, 2.0, 0.5))
    assert grid.array_shape == (2, 3, 4)
    assert grid.voxel_count == 24
    assert grid.origin == (-1.5, -2.0, -0.25)
    with pytest.raises(InvalidGeometryError):
        VolumeGeometry((4, 0, 2))


def uneven_full_scans():
    step = 2 * math.pi / 360
    jittered = np.arange(360) * step + np.random.default_rng(7).uniform(-0.4, 0.4, 360) * step
    missing_pair = np.delete(np.arange(360) * step, [100, 101])
    stretched = np.concatenate([np.arange(350) * step, [351.0 * step]])
    return [jittered, missing_pair, stretched]


@pytest.mark.parametrize("angles", uneven_full_scans())
def test_uneven_full_scans_keep_every_gap(angles):
    assert is_full_scan(angles)
    np.testing.assert_allclose(angular_gaps(angles).sum(), 2 * math.pi)
    assert angular_weights(angles).sum() == pytest.approx(math.pi, rel=1e-12)


def test_full_scan_with_wide_gap_and_sparse_uniform_orbit():
    step = math.radians(2.0)
    # 12 degree hole left by five missing views
    angles = np.delete(np.arange(180) * step, [40, 41, 42, 43, 44])
    assert is_full_scan(angles)
    assert angular_weights(angles).sum() == pytest.approx(math.pi)
    # 45 degree steps are a full rotation too
    assert is_full_scan(np.arange(8) * math.pi / 4)
    # a 30 degree hole is not
    assert not is_full_scan(np.arange(0.0, math.radians(330.0), step))
