"""Tests for the invertible transform models."""

import numpy as np
import pytest
import SimpleITK as sitk

from transforms import (
    AffineModel,
    AxiallyScaledModel,
    NoninvertibleModelError,
    RigidModel,
    SimpleITKModel,
    concatenate_axial_scaling,
)


def test_affine_inverse_undoes_forward() -> None:
    model = AffineModel([[2.0, 0.5, 0.0, 1.0],
                         [0.0, 1.0, 0.0, -2.0],
                         [0.0, 0.0, 3.0, 0.5]])
    points = np.array([[0.0, 0.0, 0.0], [1.0, 2.0, 3.0], [-4.0, 0.5, 7.0]])

    np.testing.assert_allclose(model.apply_inverse(model.apply(points)), points, atol=1e-12)
    np.testing.assert_allclose(model.apply([0.0, 0.0, 0.0]), [1.0, -2.0, 0.5])


def test_singular_affine_cannot_be_inverted() -> None:
    model = AffineModel([[1.0, 2.0, 0.0], [2.0, 4.0, 0.0]])

    assert not model.is_invertible()
    model.apply([1.0, 1.0])
    with pytest.raises(NoninvertibleModelError):
        model.apply_inverse([1.0, 1.0])


def test_affine_rejects_bad_shapes() -> None:
    with pytest.raises(ValueError):
        AffineModel(np.eye(2))
    with pytest.raises(ValueError):
        AffineModel([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 0.0, 1.0]])


def test_affine_concatenate_applies_other_first() -> None:
    shift = AffineModel.translation(1.0, 0.0)
    scale = AffineModel.scaling(2.0, 2.0)

    np.testing.assert_allclose(scale.concatenate(shift).apply([1.0, 1.0]), [4.0, 2.0])
    np.testing.assert_allclose(scale.preconcatenate(shift).apply([1.0, 1.0]), [3.0, 2.0])


def test_rigid_rotation_round_trip() -> None:
    model = RigidModel.from_angle(np.pi / 2, translation=[10.0, 0.0])

    np.testing.assert_allclose(model.apply([1.0, 0.0]), [10.0, 1.0], atol=1e-12)
    np.testing.assert_allclose(model.apply_inverse([10.0, 1.0]), [1.0, 0.0], atol=1e-12)

    rotation = RigidModel.from_euler(0.1, -0.4, 1.2, translation=[1.0, 2.0, 3.0])
    points = np.random.default_rng(0).uniform(-5, 5, size=(10, 3))
    np.testing.assert_allclose(rotation.apply_inverse(rotation.apply(points)), points, atol=1e-10)
    np.testing.assert_allclose(rotation.to_affine().apply(points), rotation.apply(points), atol=1e-12)


def test_rigid_rejects_reflection() -> None:
    with pytest.raises(ValueError):
        RigidModel([[-1.0, 0.0], [0.0, 1.0]])
    with pytest.raises(ValueError):
        RigidModel([[2.0, 0.0], [0.0, 1.0]])


def test_estimate_bounds_covers_rotated_box() -> None:
    model = RigidModel.from_angle(np.pi / 2)

    lower, upper = model.estimate_bounds([0.0, 0.0], [4.0, 2.0])

    np.testing.assert_allclose(lower, [-2.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(upper, [0.0, 4.0], atol=1e-12)


def test_axial_scaling_returns_a_new_model() -> None:
    model = AffineModel.translation(1.0, 2.0, 3.0)
    original = model.matrix.copy()

    scaled = concatenate_axial_scaling(model, 2.5)
    scaled_again = concatenate_axial_scaling(model, 2.5)

    np.testing.assert_array_equal(model.matrix, original)
    np.testing.assert_allclose(scaled.matrix, scaled_again.matrix)
    np.testing.assert_allclose(scaled.apply([0.0, 0.0, 2.0]), [1.0, 2.0, 8.0])
    np.testing.assert_allclose(scaled.apply_inverse([1.0, 2.0, 8.0]), [0.0, 0.0, 2.0])


def test_axial_scaling_rejects_2d_models() -> None:
    with pytest.raises(ValueError):
        concatenate_axial_scaling(AffineModel.identity(2), 2.0)


def test_simpleitk_model_wraps_forward_transforms() -> None:
    model = SimpleITKModel(sitk.TranslationTransform(3, (1.0, 2.0, 3.0)))

    assert model.dimensionality == 3
    assert model.is_invertible()
    np.testing.assert_allclose(model.apply([0.0, 0.0, 0.0]), [1.0, 2.0, 3.0])
    np.testing.assert_allclose(model.apply_inverse([[1.0, 2.0, 3.0], [2.0, 2.0, 2.0]]),
                               [[0.0, 0.0, 0.0], [1.0, 0.0, -1.0]])

    lower, upper = model.estimate_bounds([0.0, 0.0, 0.0], [1.0, 1.0, 1.0])
    np.testing.assert_allclose(lower, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(upper, [2.0, 3.0, 4.0])


def test_registration_transforms_are_used_as_inverse() -> None:
    registration = sitk.TranslationTransform(3, (1.0, 2.0, 3.0))

    model = SimpleITKModel.from_registration(registration)

    np.testing.assert_allclose(model.apply([1.0, 2.0, 3.0]), [0.0, 0.0, 0.0])
    np.testing.assert_allclose(model.apply_inverse([0.0, 0.0, 0.0]), [1.0, 2.0, 3.0])


def test_generic_models_are_wrapped_for_axial_scaling() -> None:
    model = SimpleITKModel(sitk.TranslationTransform(3, (1.0, 2.0, 3.0)))

    scaled = concatenate_axial_scaling(model, 2.0)

    assert isinstance(scaled, AxiallyScaledModel)
    np.testing.assert_allclose(scaled.apply([0.0, 0.0, 1.0]), [1.0, 2.0, 5.0])
    np.testing.assert_allclose(scaled.apply_inverse([1.0, 2.0, 5.0]), [0.0, 0.0, 1.0])
