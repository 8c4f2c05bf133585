"""
Hyperstack data model and axis reordering.

This module provides:
- The Volume container: an ordered sequence of 2D planes plus channel, slice
  and frame counts and a physical calibration
- Axis assignments between the channel (c), slice (z) and frame (t) roles
- Reordering of a hyperstack's planes without copying pixel data

Planes are stored channel fastest, then slice, then frame (XYCZT), the order
ImageJ hyperstacks use.
"""

import numpy as np


CHANNELS = 0
SLICES = 1
FRAMES = 2

AXIS_NAMES = ('channels', 'slices', 'frames')

NAMED_ORDERINGS = {
    'CZT': (0, 1, 2),
    'CTZ': (0, 2, 1),
    'ZCT': (1, 0, 2),
    'ZTC': (1, 2, 0),
    'TCZ': (2, 0, 1),
    'TZC': (2, 1, 0),
}

XYZCT_PREFIX = '[XYZCT] '


class AxisAssignmentError(ValueError):
    """Raised when an axis assignment is not a permutation of (c, z, t)."""


# ============================================================================
# Volume
# ============================================================================

class Calibration(object):
    """Physical size of one voxel."""

    def __init__(self, pixel_width=1.0, pixel_height=1.0, pixel_depth=1.0, unit='pixel'):
        self.pixel_width = float(pixel_width)
        self.pixel_height = float(pixel_height)
        self.pixel_depth = float(pixel_depth)
        self.unit = unit

    def copy(self):
        return Calibration(self.pixel_width, self.pixel_height, self.pixel_depth, self.unit)

    def is_default(self):
        return self == Calibration()

    def as_dict(self):
        return {
            'pixel_width': self.pixel_width,
            'pixel_height': self.pixel_height,
            'pixel_depth': self.pixel_depth,
            'unit': self.unit,
        }

    def __eq__(self, other):
        if not isinstance(other, Calibration):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __repr__(self):
        return (f"Calibration({self.pixel_width}, {self.pixel_height}, "
                f"{self.pixel_depth}, unit={self.unit!r})")


class Volume(object):
    """
    A hyperstack: equally shaped 2D planes with channel, slice and frame counts.

    The Volume only holds references to its planes. Several Volumes may share
    the same plane buffers (see reorder_hyperstack), so planes must not be
    modified in place while more than one Volume refers to them.

    Parameters:
    -----------
    planes : sequence of numpy.ndarray
        2D arrays with identical shape (height, width) and dtype
    n_channels, n_slices, n_frames : int
        Axis counts; their product must equal the number of planes
    calibration : Calibration or None
        Physical voxel size (defaults to unit scale)
    title : str
        Identifier of the volume
    labels : sequence of str or None
        Optional per-plane labels
    """

    def __init__(self, planes, n_channels=1, n_slices=1, n_frames=1,
                 calibration=None, title='', labels=None):
        planes = tuple(planes)
        if len(planes) == 0:
            raise ValueError("A volume needs at least one plane")

        first = planes[0]
        if first.ndim != 2:
            raise ValueError(f"Planes must be 2D, got shape {first.shape}")
        for i, plane in enumerate(planes):
            if plane.shape != first.shape:
                raise ValueError(f"Plane {i} has shape {plane.shape}, expected {first.shape}")
            if plane.dtype != first.dtype:
                raise ValueError(f"Plane {i} has dtype {plane.dtype}, expected {first.dtype}")

        dims = (int(n_channels), int(n_slices), int(n_frames))
        if min(dims) < 1:
            raise ValueError(f"Axis counts must be positive, got {dims}")
        if dims[0] * dims[1] * dims[2] != len(planes):
            raise ValueError(
                f"Dimensions c={dims[0]}, z={dims[1]}, t={dims[2]} do not match "
                f"{len(planes)} planes"
            )

        if labels is None:
            labels = ('',) * len(planes)
        labels = tuple(labels)
        if len(labels) != len(planes):
            raise ValueError(f"Got {len(labels)} labels for {len(planes)} planes")

        self._planes = planes
        self._labels = labels
        self._shape = first.shape
        self._dtype = first.dtype
        self._dims = dims
        self.calibration = calibration.copy() if calibration is not None else Calibration()
        self.title = title
        self.closed = False

    @classmethod
    def from_array(cls, array, axes='ZYX', calibration=None, title=''):
        """
        Wrap an N-d array as a Volume. Planes are views into `array`.

        Parameters:
        -----------
        array : numpy.ndarray
            Image data, the last two axes must be Y and X
        axes : str
            Axis letters of `array`, e.g. 'YX', 'ZYX', 'ZCYX' or 'TZCYX'

        Returns:
        --------
        Volume
        """
        array = np.asarray(array)
        axes = axes.upper()
        if len(axes) != array.ndim:
            raise ValueError(f"Axes '{axes}' do not match array with {array.ndim} dimensions")
        if not axes.endswith('YX'):
            raise ValueError(f"The last two axes must be 'YX', got '{axes}'")
        leading = axes[:-2]
        if len(set(leading)) != len(leading) or not set(leading) <= set('TZC'):
            raise ValueError(f"Leading axes must be distinct letters from 'TZC', got '{leading}'")

        # Bring the array into TZCYX with singleton axes where needed
        for letter in 'TZC':
            if letter not in leading:
                array = array[np.newaxis, ...]
                leading = letter + leading
        order = [leading.index(letter) for letter in 'TZC'] + [3, 4]
        array = np.transpose(array, order)

        n_frames, n_slices, n_channels = array.shape[:3]
        planes = [array[t, z, c]
                  for t in range(n_frames)
                  for z in range(n_slices)
                  for c in range(n_channels)]
        return cls(planes, n_channels, n_slices, n_frames, calibration=calibration, title=title)

    def _check_open(self):
        if self.closed:
            raise ValueError(f"Volume '{self.title}' has been closed")

    @property
    def planes(self):
        self._check_open()
        return self._planes

    @property
    def labels(self):
        self._check_open()
        return self._labels

    @property
    def dimensions(self):
        """(channels, slices, frames)"""
        return self._dims

    @property
    def n_channels(self):
        return self._dims[CHANNELS]

    @property
    def n_slices(self):
        return self._dims[SLICES]

    @property
    def n_frames(self):
        return self._dims[FRAMES]

    @property
    def n_planes(self):
        n_channels, n_slices, n_frames = self._dims
        return n_channels * n_slices * n_frames

    @property
    def width(self):
        return self._shape[1]

    @property
    def height(self):
        return self._shape[0]

    @property
    def dtype(self):
        return self._dtype

    def get_stack_index(self, channel, slice_, frame):
        """Linear plane index of a (channel, slice, frame) coordinate, all 0-based."""
        coordinate = (channel, slice_, frame)
        for value, count, name in zip(coordinate, self._dims, AXIS_NAMES):
            if not 0 <= value < count:
                raise IndexError(f"{name} index {value} out of range [0, {count})")
        n_channels, n_slices, _ = self._dims
        return channel + slice_ * n_channels + frame * n_channels * n_slices

    def get_plane(self, channel, slice_, frame):
        return self.planes[self.get_stack_index(channel, slice_, frame)]

    def get_label(self, index):
        return self.labels[index]

    def with_dimensions(self, n_channels, n_slices, n_frames, title=None):
        """Same planes, relabelled axis counts."""
        return Volume(
            self.planes, n_channels, n_slices, n_frames,
            calibration=self.calibration,
            title=self.title if title is None else title,
            labels=self.labels,
        )

    def to_array(self):
        """Stack the planes into a (T, Z, C, Y, X) array."""
        n_channels, n_slices, n_frames = self._dims
        data = np.stack(self.planes, axis=0)
        return data.reshape(n_frames, n_slices, n_channels, self.height, self.width)

    def close(self):
        """Drop this volume's plane references. Shared buffers live on in other volumes."""
        self._planes = ()
        self._labels = ()
        self.closed = True

    def __repr__(self):
        c, z, t = self._dims
        return (f"Volume(title={self.title!r}, {self.width}x{self.height}, "
                f"c={c}, z={z}, t={t}, dtype={self.dtype})")


def get_image_chunk(volume, channel, timepoint=0):
    """
    Extract one channel of one timepoint as a float32 array for interpolation.

    Parameters:
    -----------
    volume : Volume
        Input hyperstack
    channel : int
        Channel index (0-based)
    timepoint : int
        Frame index (0-based)

    Returns:
    --------
    numpy.ndarray : (Y, X) if the volume has a single slice, otherwise (Z, Y, X)
    """
    if volume.n_slices == 1:
        return volume.get_plane(channel, 0, timepoint).astype(np.float32)

    return np.stack(
        [volume.get_plane(channel, z, timepoint) for z in range(volume.n_slices)],
        axis=0,
    ).astype(np.float32)


# ============================================================================
# Axis assignments
# ============================================================================

class AxisAssignment(object):
    """
    Mapping between the channel, slice and frame roles of two hyperstacks.

    New axis k (0 = channels, 1 = slices, 2 = frames) is taken from the input
    axis stored at position k, i.e. `AxisAssignment(1, 0, 2)` makes the input
    slices the new channels and the input channels the new slices.
    """

    def __init__(self, channels=CHANNELS, slices=SLICES, frames=FRAMES):
        self.channels = channels
        self.slices = slices
        self.frames = frames

    @classmethod
    def from_order(cls, name):
        """Build an assignment from one of 'CZT', 'CTZ', 'ZCT', 'ZTC', 'TCZ', 'TZC'."""
        key = name.upper() if isinstance(name, str) else name
        if key not in NAMED_ORDERINGS:
            raise AxisAssignmentError(
                f"Unknown reordering: {name!r}, expected one of {', '.join(NAMED_ORDERINGS)}"
            )
        return cls(*NAMED_ORDERINGS[key])

    @classmethod
    def coerce(cls, order):
        """Accept an AxisAssignment, a symbolic name or a 3-tuple of slot indices."""
        if isinstance(order, AxisAssignment):
            assignment = order
        elif isinstance(order, str):
            assignment = cls.from_order(order)
        else:
            try:
                values = tuple(order)
            except TypeError:
                raise AxisAssignmentError(f"Cannot interpret {order!r} as an axis assignment")
            if len(values) != 3:
                raise AxisAssignmentError(f"An axis assignment needs 3 entries, got {len(values)}")
            assignment = cls(*values)
        assignment.validate()
        return assignment

    def as_tuple(self):
        return (self.channels, self.slices, self.frames)

    def validate(self):
        """Check that every slot (0, 1, 2) is assigned exactly once."""
        values = self.as_tuple()
        for name, value in zip(AXIS_NAMES, values):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise AxisAssignmentError(f"Assignment for {name} must be an int, got {value!r}")
            if not 0 <= value <= 2:
                raise AxisAssignmentError(f"Assignment for {name} must be 0, 1 or 2, got {value}")

        verify = [0, 0, 0]
        for value in values:
            verify[value] += 1
        if verify != [1, 1, 1]:
            duplicated = [AXIS_NAMES[slot] for slot in range(3) if verify[slot] > 1]
            missing = [AXIS_NAMES[slot] for slot in range(3) if verify[slot] == 0]
            raise AxisAssignmentError(
                "Mapping is inconsistent: each of channels, slices and frames has to be "
                f"assigned to an input dimension (duplicated: {', '.join(duplicated)}; "
                f"missing: {', '.join(missing)})"
            )

    def inverse(self):
        """The assignment that undoes this one."""
        self.validate()
        inverse = [None] * 3
        for slot, source in enumerate(self.as_tuple()):
            inverse[source] = slot
        return AxisAssignment(*inverse)

    @property
    def name(self):
        """Symbolic name, e.g. 'ZCT'."""
        for key, value in NAMED_ORDERINGS.items():
            if value == self.as_tuple():
                return key
        return None

    def __iter__(self):
        return iter(self.as_tuple())

    def __eq__(self, other):
        if not isinstance(other, AxisAssignment):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __hash__(self):
        return hash(self.as_tuple())

    def __repr__(self):
        return f"AxisAssignment(channels={self.channels}, slices={self.slices}, frames={self.frames})"


# ============================================================================
# Reordering
# ============================================================================

def reorder_hyperstack(volume, order, close_old=False):
    """
    Create a new hyperstack with a different order of dimensions.

    The planes are not copied, the new Volume refers to the same buffers as the
    input. Iterating the result in XYCZT order visits the input planes in the
    order given by the assignment.

    Parameters:
    -----------
    volume : Volume
        Input hyperstack
    order : str, AxisAssignment or tuple
        Named ordering ('CZT', 'CTZ', 'ZCT', 'ZTC', 'TCZ', 'TZC'), an
        AxisAssignment, or a (channels, slices, frames) tuple of input axes
    close_old : bool
        Close the input volume once the new one is built

    Returns:
    --------
    Volume : the reordered hyperstack (the input itself if it has a single plane)
    """
    assignment = AxisAssignment.coerce(order)

    if volume.n_planes == 1:
        return volume

    dimensions = volume.dimensions
    new_assignment = assignment.as_tuple()
    n_channels_new = dimensions[new_assignment[CHANNELS]]
    n_slices_new = dimensions[new_assignment[SLICES]]
    n_frames_new = dimensions[new_assignment[FRAMES]]

    planes = volume.planes
    new_planes = []
    new_labels = []

    # used to translate new -> old coordinates
    index_tmp = [0, 0, 0]
    for t in range(n_frames_new):
        for z in range(n_slices_new):
            for c in range(n_channels_new):
                index_tmp[new_assignment[CHANNELS]] = c
                index_tmp[new_assignment[SLICES]] = z
                index_tmp[new_assignment[FRAMES]] = t

                index = volume.get_stack_index(*index_tmp)
                new_planes.append(planes[index])
                new_labels.append(volume.get_label(index))

    result = Volume(
        new_planes, n_channels_new, n_slices_new, n_frames_new,
        calibration=volume.calibration,
        title=volume.title,
        labels=new_labels,
    )

    if close_old:
        volume.close()

    return result


def switch_zc(volume):
    """
    Swap the channel and slice roles of a hyperstack (XYCZT <-> XYZCT).

    Used to turn a stack built one channel volume after the other into a
    regular channel-fastest hyperstack. Applying it twice restores the input
    layout and title.

    Parameters:
    -----------
    volume : Volume
        Input hyperstack

    Returns:
    --------
    Volume : hyperstack with channels and slices exchanged
    """
    if volume.title.startswith(XYZCT_PREFIX):
        new_title = volume.title[len(XYZCT_PREFIX):]
    else:
        new_title = XYZCT_PREFIX + volume.title

    result = reorder_hyperstack(volume, 'ZCT')
    if result is volume:
        # single plane, nothing to reorder
        result = volume.with_dimensions(*volume.dimensions)
    result.title = new_title
    return result
