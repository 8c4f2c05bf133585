"""
Processing functions for multi-view overlay fusion.

This module provides functions for:
- Estimating the output box that contains all transformed views
- Resampling one channel of a view into the common output frame
- Fusing every channel of every view into one composite hyperstack

Views are not blended: each (view, channel) pair becomes its own channel of
the composite, in view order and then channel order.
"""

import time
import warnings
from concurrent.futures import ThreadPoolExecutor

import dask.array as da
import numpy as np
from scipy import ndimage

from hyperstack import Volume, XYZCT_PREFIX, get_image_chunk, switch_zc
from transforms import NoninvertibleModelError, concatenate_axial_scaling


class FusionRequestError(ValueError):
    """Raised when a fusion request is inconsistent, before any work is done."""


class DegenerateGeometryError(RuntimeError):
    """Raised when a view's model cannot be inverted during resampling."""

    def __init__(self, message, image_index=None, channel=None):
        super().__init__(message)
        self.image_index = image_index
        self.channel = channel


# ============================================================================
# Requests and results
# ============================================================================

class FusionRequest(object):
    """
    Views to fuse and how to fuse them.

    Parameters:
    -----------
    images : sequence of Volume
        The views, each possibly multi-channel
    models : sequence of transforms
        One model per view, mapping view coordinates into the common frame
    dimensionality : int
        2 for single plane fusion, 3 for volumes
    target_dtype : numpy dtype
        Sample type of the composite
    timepoint : int
        Frame of every view to fuse (0-based)
    """

    def __init__(self, images, models, dimensionality=3, target_dtype=np.float32, timepoint=0):
        self.images = list(images)
        self.models = list(models)
        self.dimensionality = dimensionality
        self.target_dtype = target_dtype
        self.timepoint = timepoint

    def validate(self):
        if len(self.images) == 0:
            raise FusionRequestError("Fusion needs at least one image")
        if len(self.models) != len(self.images):
            raise FusionRequestError(
                f"Got {len(self.models)} models for {len(self.images)} images"
            )
        if self.dimensionality not in (2, 3):
            raise FusionRequestError(f"Dimensionality must be 2 or 3, got {self.dimensionality}")

        try:
            dtype = np.dtype(self.target_dtype)
        except TypeError as e:
            raise FusionRequestError(f"Invalid target type {self.target_dtype!r}") from e
        if not (np.issubdtype(dtype, np.integer) or np.issubdtype(dtype, np.floating)):
            raise FusionRequestError(f"Target type must be an integer or float type, got {dtype}")
        self.target_dtype = dtype

        for i, (image, model) in enumerate(zip(self.images, self.models)):
            model_dims = getattr(model, 'dimensionality', None)
            if model_dims != self.dimensionality:
                raise FusionRequestError(
                    f"Model {i} is {model_dims}D, the request is {self.dimensionality}D"
                )
            if image.closed:
                raise FusionRequestError(f"Image {i} ('{image.title}') has been closed")
            if self.dimensionality == 2 and image.n_slices > 1:
                raise FusionRequestError(
                    f"Image {i} ('{image.title}') has {image.n_slices} slices, "
                    "2D fusion needs single plane images"
                )
            if not 0 <= self.timepoint < image.n_frames:
                raise FusionRequestError(
                    f"Timepoint {self.timepoint} out of range for image {i} "
                    f"('{image.title}') with {image.n_frames} frames"
                )


class CompositeResult(object):
    """
    Output of create_overlay.

    Attributes:
    -----------
    volume : Volume
        The composite hyperstack (channels, slices, 1 frame)
    offset : numpy.ndarray
        Position of output voxel (0, 0[, 0]) in the common frame, (x, y[, z])
    size : numpy.ndarray
        Output size (x, y[, z])
    """

    def __init__(self, volume, offset, size):
        self.volume = volume
        self.offset = offset
        self.size = size

    @property
    def dimensions(self):
        return self.volume.dimensions

    @property
    def n_channels(self):
        return self.volume.n_channels

    @property
    def is_composite(self):
        return self.volume.n_channels > 1


# ============================================================================
# Bounds estimation
# ============================================================================

def axially_scaled_models(images, models):
    """
    Express each 3D model in isotropic units of its image.

    Parameters:
    -----------
    images : sequence of Volume
    models : sequence of 3D transforms

    Returns:
    --------
    list : new models, scaled along z by pixel_depth / pixel_width of each image
    """
    return [
        concatenate_axial_scaling(
            model, image.calibration.pixel_depth / image.calibration.pixel_width
        )
        for image, model in zip(images, models)
    ]


def estimate_bounds(images, models, dimensionality, axial_scaling=True):
    """
    Estimate the smallest output box containing all transformed images.

    Parameters:
    -----------
    images : sequence of Volume
        The views
    models : sequence of transforms
        One model per view
    dimensionality : int
        2 or 3
    axial_scaling : bool
        For 3D, correct each model for the anisotropy of its image first.
        Pass False if the models already went through axially_scaled_models.

    Returns:
    --------
    numpy.ndarray : offset (x, y[, z]) of the output box, i.e. the global minimum
    numpy.ndarray : integer size (x, y[, z]) of the output box
    """
    if len(images) == 0:
        raise FusionRequestError("Bounds estimation needs at least one image")
    if len(models) != len(images):
        raise FusionRequestError(f"Got {len(models)} models for {len(images)} images")

    if dimensionality == 3 and axial_scaling:
        models = axially_scaled_models(images, models)

    min_img = None
    max_img = None

    for image, model in zip(images, models):
        if dimensionality == 2:
            max_corner = [image.width - 1, image.height - 1]
        else:
            max_corner = [image.width - 1, image.height - 1, image.n_slices - 1]

        view_min, view_max = model.estimate_bounds(np.zeros(dimensionality), max_corner)
        view_min = np.asarray(view_min, dtype=np.float64)
        view_max = np.asarray(view_max, dtype=np.float64)

        # the image might be rotated so that min is actually max
        upper = np.maximum(view_min, view_max)
        lower = np.minimum(view_min, view_max)

        if min_img is None:
            min_img, max_img = lower, upper
        else:
            max_img = np.maximum(max_img, upper)
            min_img = np.minimum(min_img, lower)

    # round half up, inclusive of both boundary samples
    size = np.floor(max_img - min_img + 0.5).astype(int) + 1
    offset = min_img

    return offset, size


# ============================================================================
# Resampling
# ============================================================================

# Largest number of output voxels resampled at once through a generic model
_BLOCK_VOXELS = 1 << 16


def _store(output, values):
    """Write float `values` into `output`, rounding and clipping for integer types."""
    if np.issubdtype(output.dtype, np.integer):
        info = np.iinfo(output.dtype)
        np.rint(values, out=values)
        np.clip(values, info.min, info.max, out=values)
    output[...] = values


def _iter_blocks(shape, max_voxels):
    """Split an array shape into blocks of whole leading-axis slabs of at most `max_voxels`."""
    shape = tuple(int(s) for s in shape)
    if len(shape) == 1 or int(np.prod(shape)) <= max_voxels:
        yield (0,) * len(shape), shape
        return

    inner = int(np.prod(shape[1:]))
    step = max(1, max_voxels // inner)
    for start in range(0, shape[0], step):
        stop = min(start + step, shape[0])
        if inner <= max_voxels:
            yield (start,) + (0,) * (len(shape) - 1), (stop - start,) + shape[1:]
        else:
            # a single slab is still too large, split it along the next axis
            for origin, block in _iter_blocks(shape[1:], max_voxels):
                yield (start,) + origin, (1,) + block


def _resample_block(origin, shape, source, offset, model, fill_value):
    """Interpolate `source` for the output block of `shape` starting at `origin` (array order)."""
    ndim = len(shape)
    grid = np.indices(shape, dtype=np.float64).reshape(ndim, -1)
    grid += np.asarray(origin, dtype=np.float64)[:, np.newaxis]

    # array order (z, y, x) -> point order (x, y, z)
    points = grid[::-1].T + offset
    del grid

    try:
        source_points = np.atleast_2d(model.apply_inverse(points))
    except NoninvertibleModelError as e:
        raise DegenerateGeometryError(f"Cannot invert model: {e}") from e
    del points

    coordinates = source_points.T[::-1]
    values = ndimage.map_coordinates(
        source,
        coordinates,
        order=1,  # Linear interpolation
        mode='constant',
        cval=fill_value,
        prefilter=False
    )
    return values.reshape(shape)


def _inverse_in_array_order(model, offset):
    """
    Inverse of an affine model as (matrix, offset) acting on array indices.

    Output index o (z, y, x) maps to source index matrix @ o + offset.
    """
    ndim = len(offset)
    basis = offset + np.vstack([np.zeros(ndim), np.eye(ndim)])
    try:
        mapped = np.atleast_2d(model.apply_inverse(basis))
    except NoninvertibleModelError as e:
        raise DegenerateGeometryError(f"Cannot invert model: {e}") from e

    translation = mapped[0]
    linear = (mapped[1:] - translation).T
    return linear[::-1, ::-1], translation[::-1]


def _fuse_region(output, origin, source, offset, model, fill_value):
    """Fill `output`, the block of the full output starting at `origin`, in place."""
    origin = np.asarray(origin, dtype=np.float64)
    # float32 for small types, float64 for wide integers and float64 output
    buffer_dtype = np.promote_types(output.dtype, np.float32)

    if getattr(model, 'matrix', None) is not None:
        matrix, shift = _inverse_in_array_order(model, offset)
        buffer = output if output.dtype == buffer_dtype else np.empty(output.shape, buffer_dtype)
        ndimage.affine_transform(
            source,
            matrix,
            offset=shift + matrix @ origin,
            output=buffer,
            order=1,  # Linear interpolation
            mode='constant',
            cval=fill_value,
            prefilter=False
        )
        if buffer is not output:
            _store(output, buffer)
        return output

    for block_origin, block_shape in _iter_blocks(output.shape, _BLOCK_VOXELS):
        values = _resample_block(
            origin + np.asarray(block_origin), block_shape, source, offset, model, fill_value
        )
        region = tuple(slice(start, start + length)
                       for start, length in zip(block_origin, block_shape))
        _store(output[region], values.astype(buffer_dtype, copy=False))
    return output


def fuse_channel(output, source, offset, model, fill_value=0.0, use_dask=False, chunk_size=None):
    """
    Fill `output` with one channel of one view, mapped into the output frame.

    Every output voxel p is mapped to p + offset, then through the inverse of
    `model` into the source, where it is linearly interpolated. Positions
    outside the source get `fill_value`.

    Models with a `matrix` (affine and rigid) are resampled in one pass with
    ndimage.affine_transform. Other models are resampled block by block, each
    block holding at most _BLOCK_VOXELS output voxels.

    Parameters:
    -----------
    output : numpy.ndarray
        Preallocated output, (Y, X) or (Z, Y, X); filled in place
    source : numpy.ndarray
        Source channel with the same number of dimensions, typically float32
    offset : sequence of float
        Offset (x, y[, z]) of the output box in the common frame
    model : transform
        Model of the view
    fill_value : float
        Value for positions outside the source
    use_dask : bool
        Resample the output in dask chunks on the threaded scheduler
    chunk_size : tuple or None
        Chunk shape in array order (if None, dask chooses)

    Returns:
    --------
    numpy.ndarray : `output`

    Raises:
    -------
    DegenerateGeometryError : if the model cannot be inverted
    """
    offset = np.asarray(offset, dtype=np.float64)
    if output.ndim != source.ndim:
        raise ValueError(f"Output is {output.ndim}D but source is {source.ndim}D")
    if offset.shape != (output.ndim,):
        raise ValueError(f"Expected an offset of length {output.ndim}, got {offset.shape}")

    if use_dask:
        template = da.zeros(
            output.shape,
            dtype=output.dtype,
            chunks=chunk_size if chunk_size is not None else 'auto'
        )

        def _fuse_block(block, block_info=None):
            location = block_info[None]['array-location']
            origin = [start for start, _ in location]
            return _fuse_region(np.empty(block.shape, dtype=output.dtype), origin,
                                source, offset, model, fill_value)

        fused = da.map_blocks(
            _fuse_block,
            template,
            dtype=output.dtype,
            meta=np.array((), dtype=output.dtype)
        )
        fused.store(output, scheduler='threads', lock=False)
    else:
        _fuse_region(output, np.zeros(output.ndim), source, offset, model, fill_value)

    return output



# ============================================================================
# Fusion
# ============================================================================

def create_overlay(request, fill_value=0.0, max_workers=None, use_dask=False,
                   chunk_size=None, verbose=False):
    """
    Fuse several registered views into one composite hyperstack.

    Every channel of every view is resampled into the box returned by
    estimate_bounds and becomes one channel of the composite. Channel order is
    view order, then channel order within a view, regardless of the order in
    which the workers finish.

    Parameters:
    -----------
    request : FusionRequest
        Views, models, dimensionality and target type
    fill_value : float
        Value for output voxels that fall outside a view
    max_workers : int or None
        Number of (view, channel) pairs resampled concurrently
    use_dask : bool
        Additionally split each channel into dask chunks (see fuse_channel)
    chunk_size : tuple or None
        Dask chunk shape in array order
    verbose : bool
        Print progress

    Returns:
    --------
    CompositeResult

    Raises:
    -------
    FusionRequestError : if the request is invalid (nothing is computed)
    DegenerateGeometryError : if a model cannot be inverted (no result is returned)
    """
    request.validate()

    start_time = time.time()
    images = request.images
    dimensionality = request.dimensionality
    target_dtype = request.target_dtype

    models = request.models
    if dimensionality == 3:
        models = axially_scaled_models(images, models)

    offset, size = estimate_bounds(images, models, dimensionality, axial_scaling=False)
    output_shape = tuple(int(s) for s in size[::-1])

    tasks = [(i, c) for i, image in enumerate(images) for c in range(image.n_channels)]

    if verbose:
        print(f"  Fusing {len(images)} images ({len(tasks)} channels)...")
        print(f"    Output size: {tuple(int(s) for s in size)}, offset: {tuple(float(o) for o in offset)}")

    calibrations = {tuple(image.calibration.as_dict().items()) for image in images}
    if len(calibrations) > 1:
        warnings.warn("Images have different calibrations, the composite uses unit calibration.")

    def fuse_task(task):
        i, c = task
        image = images[i]
        source = get_image_chunk(image, c, request.timepoint)
        if dimensionality == 3 and source.ndim == 2:
            source = source[np.newaxis]

        output = np.zeros(output_shape, dtype=target_dtype)
        try:
            fuse_channel(output, source, offset, models[i], fill_value=fill_value,
                         use_dask=use_dask, chunk_size=chunk_size)
        except DegenerateGeometryError as e:
            raise DegenerateGeometryError(
                f"Cannot invert model of image {i} ('{image.title}'), channel {c}, quitting.",
                image_index=i,
                channel=c
            ) from e

        if verbose:
            print(f"    Fused image {i} ('{image.title}'), channel {c}")
        return output

    executor = ThreadPoolExecutor(max_workers=max_workers)
    try:
        # map() yields results in submission order
        fused_channels = list(executor.map(fuse_task, tasks))
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    planes = []
    labels = []
    for (i, _), fused in zip(tasks, fused_channels):
        channel_planes = list(fused) if dimensionality == 3 else [fused]
        planes.extend(channel_planes)
        labels.extend([images[i].title] * len(channel_planes))

    num_channels = len(tasks)
    title = f"overlay {images[0].title} ... {images[-1].title}"

    if dimensionality == 3:
        # planes were added one channel volume after the other (XYZCT)
        result = Volume(planes, int(size[2]), num_channels, 1,
                        title=XYZCT_PREFIX + title, labels=labels)
        result = switch_zc(result)
    else:
        result = Volume(planes, num_channels, 1, 1, title=title, labels=labels)

    if verbose:
        total_time = time.time() - start_time
        print(f"  Fusion completed in {total_time:.1f} seconds")

    return CompositeResult(result, offset, size)


def create_overlay_pair(imp1, imp2, model1, model2, dimensionality=3,
                        target_dtype=np.float32, **kwargs):
    """Fuse two views, see create_overlay for the keyword arguments."""
    request = FusionRequest([imp1, imp2], [model1, model2], dimensionality, target_dtype)
    return create_overlay(request, **kwargs)
