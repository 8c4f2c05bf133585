"""
Invertible coordinate transforms used to place views in a common frame.

Every model offers the same capabilities, the fusion code relies on nothing else:
- dimensionality : 2 or 3
- apply(points) : forward transform
- apply_inverse(points) : inverse transform, raises NoninvertibleModelError
- estimate_bounds(min_corner, max_corner) : bounding box of a transformed box

Points are (x, y[, z]) coordinates, either a single (D,) point or an (N, D)
array of points. Registration results from SimpleITK (see register_arms in the
diSPIM pipeline) map fixed points to moving points; wrap them with
SimpleITKModel.from_registration to get the model of the moving view.
"""

import itertools

import numpy as np
import SimpleITK as sitk


class NoninvertibleModelError(ArithmeticError):
    """Raised when a model cannot be inverted (at all, or at a given point)."""


def _as_points(points, dimensionality):
    points = np.asarray(points, dtype=np.float64)
    single = points.ndim == 1
    points = np.atleast_2d(points)
    if points.ndim != 2 or points.shape[1] != dimensionality:
        raise ValueError(
            f"Expected points with {dimensionality} coordinates, got shape {points.shape}"
        )
    return points, single


def _restore(points, single):
    return points[0] if single else points


def corner_bounds(model, min_corner, max_corner):
    """
    Transform all corners of an axis-aligned box and return their bounding box.

    Parameters:
    -----------
    model : transform
        Any model with apply()
    min_corner, max_corner : sequence of float
        Opposite corners of the box

    Returns:
    --------
    numpy.ndarray : minimum of the transformed corners
    numpy.ndarray : maximum of the transformed corners
    """
    min_corner = np.asarray(min_corner, dtype=np.float64)
    max_corner = np.asarray(max_corner, dtype=np.float64)
    corners = np.array(list(itertools.product(*zip(min_corner, max_corner))))
    transformed = np.atleast_2d(model.apply(corners))
    return transformed.min(axis=0), transformed.max(axis=0)


# ============================================================================
# Affine and rigid models
# ============================================================================

class AffineModel(object):
    """
    Affine transform x' = A x + t.

    Parameters:
    -----------
    matrix : array_like
        D x (D+1) matrix [A | t], or the homogeneous (D+1) x (D+1) matrix
    """

    def __init__(self, matrix):
        matrix = np.asarray(matrix, dtype=np.float64)
        rows, cols = matrix.shape
        if rows == cols:
            expected = np.zeros(cols)
            expected[-1] = 1.0
            if not np.allclose(matrix[-1], expected):
                raise ValueError(f"Last row of a homogeneous matrix must be {expected}, got {matrix[-1]}")
            matrix = matrix[:-1]
            rows = matrix.shape[0]
        if cols != rows + 1 or rows not in (2, 3):
            raise ValueError(f"Expected a 2x3, 3x4, 3x3 or 4x4 matrix, got shape {matrix.shape}")

        self.dimensionality = rows
        self.matrix = np.vstack([matrix, np.eye(rows + 1)[-1]])

        singular_values = np.linalg.svd(self.matrix[:-1, :-1], compute_uv=False)
        if singular_values[-1] <= singular_values[0] * rows * np.finfo(np.float64).eps:
            self._inverse_matrix = None
        else:
            self._inverse_matrix = np.linalg.inv(self.matrix)

    @classmethod
    def identity(cls, dimensionality=3):
        return cls(np.eye(dimensionality + 1))

    @classmethod
    def translation(cls, *shift):
        matrix = np.eye(len(shift) + 1)
        matrix[:-1, -1] = shift
        return cls(matrix)

    @classmethod
    def scaling(cls, *factors):
        return cls(np.diag(list(factors) + [1.0]))

    @property
    def linear(self):
        return self.matrix[:-1, :-1]

    @property
    def offset(self):
        return self.matrix[:-1, -1]

    def is_invertible(self):
        return self._inverse_matrix is not None

    def apply(self, points):
        points, single = _as_points(points, self.dimensionality)
        return _restore(points @ self.linear.T + self.offset, single)

    def apply_inverse(self, points):
        if self._inverse_matrix is None:
            raise NoninvertibleModelError("Affine matrix is singular")
        points, single = _as_points(points, self.dimensionality)
        linear = self._inverse_matrix[:-1, :-1]
        offset = self._inverse_matrix[:-1, -1]
        return _restore(points @ linear.T + offset, single)

    def estimate_bounds(self, min_corner, max_corner):
        return corner_bounds(self, min_corner, max_corner)

    def concatenate(self, other):
        """Model applying `other` first, then this model."""
        return AffineModel(self.matrix @ np.asarray(other.matrix))

    def preconcatenate(self, other):
        """Model applying this model first, then `other`."""
        return AffineModel(np.asarray(other.matrix) @ self.matrix)

    def __repr__(self):
        return f"AffineModel({self.matrix[:-1].tolist()})"


class RigidModel(object):
    """
    Rotation followed by a translation, x' = R x + t.

    Parameters:
    -----------
    rotation : array_like
        D x D rotation matrix (orthonormal, determinant +1)
    translation : array_like or None
        Translation vector (default: zero)
    """

    def __init__(self, rotation, translation=None):
        rotation = np.asarray(rotation, dtype=np.float64)
        dimensionality = rotation.shape[0]
        if rotation.shape != (dimensionality, dimensionality) or dimensionality not in (2, 3):
            raise ValueError(f"Expected a 2x2 or 3x3 rotation, got shape {rotation.shape}")
        if not np.allclose(rotation.T @ rotation, np.eye(dimensionality), atol=1e-6):
            raise ValueError("Rotation matrix is not orthonormal")
        if np.linalg.det(rotation) < 0:
            raise ValueError("Rotation matrix contains a reflection, use AffineModel instead")

        if translation is None:
            translation = np.zeros(dimensionality)
        translation = np.asarray(translation, dtype=np.float64)
        if translation.shape != (dimensionality,):
            raise ValueError(f"Expected a translation of length {dimensionality}, got {translation.shape}")

        self.dimensionality = dimensionality
        self.rotation = rotation
        self.translation = translation

    @classmethod
    def from_angle(cls, angle_rad, translation=None):
        """2D rotation by `angle_rad` (counter-clockwise)."""
        cos, sin = np.cos(angle_rad), np.sin(angle_rad)
        return cls([[cos, -sin], [sin, cos]], translation)

    @classmethod
    def from_euler(cls, angle_x, angle_y, angle_z, translation=None):
        """3D rotation R = Rz @ Ry @ Rx, angles in radians."""
        cx, sx = np.cos(angle_x), np.sin(angle_x)
        cy, sy = np.cos(angle_y), np.sin(angle_y)
        cz, sz = np.cos(angle_z), np.sin(angle_z)
        rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
        ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
        rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
        return cls(rz @ ry @ rx, translation)

    @property
    def matrix(self):
        matrix = np.eye(self.dimensionality + 1)
        matrix[:-1, :-1] = self.rotation
        matrix[:-1, -1] = self.translation
        return matrix

    def apply(self, points):
        points, single = _as_points(points, self.dimensionality)
        return _restore(points @ self.rotation.T + self.translation, single)

    def apply_inverse(self, points):
        points, single = _as_points(points, self.dimensionality)
        # R is orthonormal, its inverse is its transpose
        return _restore((points - self.translation) @ self.rotation, single)

    def estimate_bounds(self, min_corner, max_corner):
        return corner_bounds(self, min_corner, max_corner)

    def to_affine(self):
        return AffineModel(self.matrix)

    def __repr__(self):
        return f"RigidModel(rotation={self.rotation.tolist()}, translation={self.translation.tolist()})"


# ============================================================================
# Generic models
# ============================================================================

class SimpleITKModel(object):
    """
    Any SimpleITK transform, including non-linear ones.

    The wrapped transform is the forward model of the view (view -> common
    frame). Transforms from SimpleITK registration map the other way, from the
    fixed (output) frame to the moving image, which is how ResampleImageFilter
    uses them; wrap those with from_registration.

    Parameters:
    -----------
    transform : SimpleITK.Transform
        Forward transform
    inverse : SimpleITK.Transform or None
        Inverse transform (if None, transform.GetInverse() is used when it exists)
    """

    def __init__(self, transform, inverse=None):
        self.transform = transform
        self.dimensionality = transform.GetDimension()
        if inverse is None:
            try:
                inverse = transform.GetInverse()
            except RuntimeError:
                inverse = None
        self._inverse = inverse

    @classmethod
    def from_registration(cls, transform):
        """
        Model of a moving image registered with SimpleITK.

        `transform` maps fixed image points to moving image points, so it is
        the inverse of the view's model.
        """
        try:
            forward = transform.GetInverse()
        except RuntimeError as e:
            raise NoninvertibleModelError(
                f"SimpleITK transform {transform.GetName()} has no inverse"
            ) from e
        return cls(forward, inverse=transform)

    def is_invertible(self):
        return self._inverse is not None

    def _transform_points(self, transform, points):
        return np.array([transform.TransformPoint(tuple(float(v) for v in p)) for p in points])

    def apply(self, points):
        points, single = _as_points(points, self.dimensionality)
        return _restore(self._transform_points(self.transform, points), single)

    def apply_inverse(self, points):
        if self._inverse is None:
            raise NoninvertibleModelError(
                f"SimpleITK transform {self.transform.GetName()} has no inverse"
            )
        points, single = _as_points(points, self.dimensionality)
        return _restore(self._transform_points(self._inverse, points), single)

    def estimate_bounds(self, min_corner, max_corner):
        return corner_bounds(self, min_corner, max_corner)

    def __repr__(self):
        return f"SimpleITKModel({self.transform.GetName()})"


class AxiallyScaledModel(object):
    """A 3D model preceded by scaling of the z axis by `factor`."""

    def __init__(self, model, factor):
        if model.dimensionality != 3:
            raise ValueError("Axial scaling needs a 3D model")
        if factor == 0:
            raise ValueError("Axial scaling factor must not be zero")
        self.model = model
        self.factor = float(factor)
        self.dimensionality = 3
        self._scale = np.array([1.0, 1.0, self.factor])

    def apply(self, points):
        points, single = _as_points(points, 3)
        return _restore(np.atleast_2d(self.model.apply(points * self._scale)), single)

    def apply_inverse(self, points):
        points, single = _as_points(points, 3)
        return _restore(np.atleast_2d(self.model.apply_inverse(points)) / self._scale, single)

    def estimate_bounds(self, min_corner, max_corner):
        return corner_bounds(self, min_corner, max_corner)

    def __repr__(self):
        return f"AxiallyScaledModel({self.model!r}, factor={self.factor})"


def concatenate_axial_scaling(model, factor):
    """
    Return a new model that first scales z by `factor`, then applies `model`.

    Used to express anisotropic stacks (z-step != pixel size) in isotropic
    units. The input model is left untouched, so calling this twice on the
    same model gives the same result.

    Parameters:
    -----------
    model : transform
        3D model
    factor : float
        Axial scale, typically pixel_depth / pixel_width

    Returns:
    --------
    AffineModel for affine and rigid models, AxiallyScaledModel otherwise
    """
    if model.dimensionality != 3:
        raise ValueError(f"Axial scaling needs a 3D model, got {model.dimensionality}D")

    matrix = getattr(model, 'matrix', None)
    if matrix is not None:
        return AffineModel(np.asarray(matrix) @ AffineModel.scaling(1.0, 1.0, factor).matrix)
    return AxiallyScaledModel(model, factor)
