"""Tests for the hyperstack container and axis reordering."""

import itertools

import numpy as np
import pytest

from hyperstack import (
    NAMED_ORDERINGS,
    AxisAssignment,
    AxisAssignmentError,
    Calibration,
    Volume,
    get_image_chunk,
    reorder_hyperstack,
    switch_zc,
)


def _make_volume(n_channels: int, n_slices: int, n_frames: int) -> Volume:
    """Volume whose planes are filled with their own stack index."""
    n_planes = n_channels * n_slices * n_frames
    planes = [np.full((3, 4), i, dtype=np.uint16) for i in range(n_planes)]
    return Volume(planes, n_channels, n_slices, n_frames,
                  calibration=Calibration(0.5, 0.5, 2.0, unit='um'), title='stack')


def _plane_ids(volume: Volume) -> list:
    return [int(plane[0, 0]) for plane in volume.planes]


def test_stack_index_is_channel_fastest() -> None:
    volume = _make_volume(2, 3, 4)

    assert volume.get_stack_index(0, 0, 0) == 0
    assert volume.get_stack_index(1, 0, 0) == 1
    assert volume.get_stack_index(0, 1, 0) == 2
    assert volume.get_stack_index(1, 2, 3) == 1 + 2 * 2 + 3 * 6
    assert int(volume.get_plane(1, 2, 3)[0, 0]) == 23

    with pytest.raises(IndexError):
        volume.get_stack_index(2, 0, 0)


def test_volume_rejects_inconsistent_dimensions() -> None:
    planes = [np.zeros((3, 4)) for _ in range(6)]

    with pytest.raises(ValueError):
        Volume(planes, 2, 2, 2)
    with pytest.raises(ValueError):
        Volume(planes[:5] + [np.zeros((4, 4))], 2, 3, 1)
    with pytest.raises(ValueError):
        Volume([], 1, 1, 1)


def test_from_array_builds_views() -> None:
    """ZCYX data should become channel-fastest planes without copies."""
    data = np.arange(3 * 2 * 4 * 5, dtype=np.uint16).reshape(3, 2, 4, 5)

    volume = Volume.from_array(data, axes='ZCYX')

    assert volume.dimensions == (2, 3, 1)
    assert (volume.width, volume.height) == (5, 4)
    np.testing.assert_array_equal(volume.get_plane(1, 2, 0), data[2, 1])
    assert np.shares_memory(volume.get_plane(0, 0, 0), data)
    np.testing.assert_array_equal(volume.to_array()[0], data)

    with pytest.raises(ValueError):
        Volume.from_array(data, axes='ZCXY')


def test_reorder_zct_swaps_channels_and_slices() -> None:
    volume = _make_volume(2, 3, 1)

    result = reorder_hyperstack(volume, 'ZCT')

    assert result.dimensions == (3, 2, 1)
    assert _plane_ids(result) == [0, 2, 4, 1, 3, 5]
    assert result.calibration == volume.calibration
    assert result.title == volume.title


@pytest.mark.parametrize("name", sorted(NAMED_ORDERINGS))
@pytest.mark.parametrize("dims", [(2, 3, 4), (1, 5, 2), (3, 1, 1), (2, 2, 2)])
def test_reorder_is_a_bijection(name: str, dims: tuple) -> None:
    """Every input plane appears exactly once and the buffers are shared."""
    volume = _make_volume(*dims)

    result = reorder_hyperstack(volume, name)

    n_planes = volume.n_planes
    assert result.n_planes == n_planes
    assert sorted(_plane_ids(result)) == list(range(n_planes))
    expected_dims = tuple(dims[axis] for axis in NAMED_ORDERINGS[name])
    assert result.dimensions == expected_dims
    for plane in result.planes:
        assert any(plane is original for original in volume.planes)


@pytest.mark.parametrize("name", sorted(NAMED_ORDERINGS))
def test_reorder_round_trip_restores_order(name: str) -> None:
    volume = _make_volume(2, 3, 4)
    assignment = AxisAssignment.from_order(name)

    restored = reorder_hyperstack(reorder_hyperstack(volume, assignment), assignment.inverse())

    assert restored.dimensions == volume.dimensions
    assert all(a is b for a, b in zip(restored.planes, volume.planes))


def test_invalid_assignment_is_rejected() -> None:
    volume = _make_volume(2, 3, 4)

    with pytest.raises(AxisAssignmentError) as excinfo:
        reorder_hyperstack(volume, (0, 0, 1))

    message = str(excinfo.value)
    assert "duplicated: channels" in message
    assert "missing: frames" in message
    assert not volume.closed


@pytest.mark.parametrize("order", [(0, 1), (0, 1, 3), (0, 1, 1.0), "XYZ", "czt2"])
def test_malformed_orders_are_rejected(order) -> None:
    with pytest.raises(AxisAssignmentError):
        AxisAssignment.coerce(order)


def test_unknown_ordering_is_rejected() -> None:
    with pytest.raises(AxisAssignmentError, match="Unknown reordering"):
        AxisAssignment.from_order("ZZT")


def test_named_orderings_are_case_insensitive() -> None:
    assignment = AxisAssignment.from_order("tzc")

    assert assignment == AxisAssignment(2, 1, 0)
    assert assignment.name == "TZC"


def test_all_permutations_validate() -> None:
    for values in itertools.permutations(range(3)):
        AxisAssignment(*values).validate()
        assert AxisAssignment(*values).inverse().inverse() == AxisAssignment(*values)


def test_single_plane_volume_passes_through() -> None:
    volume = _make_volume(1, 1, 1)

    for name in NAMED_ORDERINGS:
        assert reorder_hyperstack(volume, name) is volume


@pytest.mark.parametrize("dims", [(4, 1, 1), (1, 4, 1), (1, 1, 4)])
@pytest.mark.parametrize("name", sorted(NAMED_ORDERINGS))
def test_singleton_axes_keep_plane_order(dims, name) -> None:
    volume = _make_volume(*dims)

    result = reorder_hyperstack(volume, name)

    assert sorted(result.dimensions) == [1, 1, 4]
    assert [id(p) for p in result.planes] == [id(p) for p in volume.planes]


def test_reorder_moves_plane_labels() -> None:
    volume = _make_volume(2, 3, 1)
    volume = Volume(volume.planes, 2, 3, 1, title='stack',
                    labels=[f"plane{i}" for i in range(6)])

    result = reorder_hyperstack(volume, "ZCT")

    for index in range(6):
        assert result.get_label(index) == f"plane{_plane_ids(result)[index]}"


def test_calibration_is_default() -> None:
    assert Calibration().is_default()
    assert not Calibration(0.5, 0.5, 2.0, unit='um').is_default()
    assert not Calibration(unit='um').is_default()


def test_close_old_keeps_shared_buffers_alive() -> None:
    volume = _make_volume(2, 3, 1)

    result = reorder_hyperstack(volume, "ZCT", close_old=True)

    assert volume.closed
    with pytest.raises(ValueError):
        volume.planes
    assert _plane_ids(result) == [0, 2, 4, 1, 3, 5]


def test_switch_zc_toggles_layout_and_title() -> None:
    volume = _make_volume(2, 3, 2)

    switched = switch_zc(volume)
    restored = switch_zc(switched)

    assert switched.dimensions == (3, 2, 2)
    assert switched.title == "[XYZCT] stack"
    assert restored.title == "stack"
    assert _plane_ids(restored) == _plane_ids(volume)


def test_get_image_chunk_includes_every_slice() -> None:
    volume = _make_volume(2, 3, 2)

    chunk = get_image_chunk(volume, channel=1, timepoint=1)

    assert chunk.dtype == np.float32
    assert chunk.shape == (3, 3, 4)
    assert [int(plane[0, 0]) for plane in chunk] == [7, 9, 11]

    single = get_image_chunk(_make_volume(2, 1, 1), channel=1)
    assert single.shape == (3, 4)
