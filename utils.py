"""
Utility functions to hand hyperstacks to and from disk.

This module provides functions for:
- Parsing acquisition metadata into dimensions and calibration
- Saving a Volume as a TIFF with a JSON sidecar
- Loading such a TIFF back into a Volume
"""

import json
from pathlib import Path

import numpy as np
import tifffile

from hyperstack import Calibration, Volume


# ============================================================================
# Metadata Parsing
# ============================================================================

def parse_metadata(metadata_path):
    """
    Parse an acquisition metadata JSON file (Micro-Manager 'Summary' block).

    Parameters:
    -----------
    metadata_path : str or Path
        Path to the metadata.txt file

    Returns:
    --------
    dict : width, height, slices, channels, frames, channel_names,
           pixel_size_um, z_step_um, acquisition_name
    """
    # Try different encodings
    metadata = None
    for encoding in ('utf-8', 'latin-1'):
        try:
            with open(metadata_path, 'r', encoding=encoding) as f:
                metadata = json.load(f)
            break
        except UnicodeDecodeError:
            continue

    summary = metadata.get('Summary', {})

    return {
        'width': int(summary.get('Width', 0)),
        'height': int(summary.get('Height', 0)),
        'slices': int(summary.get('Slices', 1)),
        'channels': int(summary.get('Channels', 1)),
        'frames': int(summary.get('Frames', 1)),
        'channel_names': summary.get('ChNames', []),
        'pixel_size_um': float(summary.get('PixelSize_um', 0)),
        'z_step_um': float(summary.get('z-step_um', 0)),
        'acquisition_name': summary.get('AcquisitionName', ''),
    }


def calibration_from_metadata(metadata):
    """
    Build a Calibration from parsed metadata.

    Missing or zero sizes fall back to 1 pixel.
    """
    pixel_size = metadata.get('pixel_size_um') or 0.0
    z_step = metadata.get('z_step_um') or 0.0
    if pixel_size <= 0:
        return Calibration()
    return Calibration(
        pixel_width=pixel_size,
        pixel_height=pixel_size,
        pixel_depth=z_step if z_step > 0 else pixel_size,
        unit='um'
    )


# ============================================================================
# Save/Load Functions
# ============================================================================

def _to_json_compatible(value):
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, (list, tuple)):
        return [_to_json_compatible(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_json_compatible(v) for k, v in value.items()}
    return value


def save_hyperstack(volume, output_path, metadata=None):
    """
    Save a hyperstack as a (T, Z, C, Y, X) TIFF with a JSON sidecar.

    Parameters:
    -----------
    volume : Volume
        Hyperstack to save
    output_path : str or Path
        Path where to save the stack (.tif)
    metadata : dict or None
        Additional metadata to store in the sidecar

    Returns:
    --------
    Path : Path to saved file
    Path : Path to metadata JSON file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    tifffile.imwrite(
        str(output_path),
        volume.to_array(),
        photometric='minisblack',
        metadata={'axes': 'TZCYX'}
    )

    n_channels, n_slices, n_frames = volume.dimensions
    sidecar = {
        'title': volume.title,
        'channels': n_channels,
        'slices': n_slices,
        'frames': n_frames,
        'labels': list(volume.labels),
    }
    # a missing calibration entry means 1 pixel per voxel
    if not volume.calibration.is_default():
        sidecar['calibration'] = volume.calibration.as_dict()
    if metadata is not None:
        sidecar['metadata'] = _to_json_compatible(metadata)

    metadata_path = output_path.with_suffix('.json')
    with open(metadata_path, 'w') as f:
        json.dump(sidecar, f, indent=2)

    return output_path, metadata_path


def load_hyperstack(stack_path):
    """
    Load a TIFF written by save_hyperstack.

    Without a sidecar the axes are guessed from the number of dimensions:
    YX, ZYX, ZCYX (slices first) or TZCYX.

    Parameters:
    -----------
    stack_path : str or Path
        Path to the saved stack (.tif file)

    Returns:
    --------
    Volume : The loaded hyperstack
    dict or None : Extra metadata stored with the stack
    """
    stack_path = Path(stack_path)
    data = tifffile.imread(str(stack_path))

    metadata_path = stack_path.with_suffix('.json')
    if not metadata_path.exists():
        axes = {2: 'YX', 3: 'ZYX', 4: 'ZCYX', 5: 'TZCYX'}.get(data.ndim)
        if axes is None:
            raise ValueError(f"Cannot interpret stack with shape {data.shape}")
        return Volume.from_array(data, axes=axes, title=stack_path.stem), None

    with open(metadata_path, 'r') as f:
        sidecar = json.load(f)

    n_channels = sidecar['channels']
    n_slices = sidecar['slices']
    n_frames = sidecar['frames']
    data = data.reshape(n_frames, n_slices, n_channels, data.shape[-2], data.shape[-1])

    calibration = sidecar.get('calibration')
    volume = Volume.from_array(
        data,
        axes='TZCYX',
        calibration=Calibration(**calibration) if calibration else None,
        title=sidecar.get('title', stack_path.stem)
    )
    labels = sidecar.get('labels')
    if labels:
        volume = Volume(volume.planes, n_channels, n_slices, n_frames,
                        calibration=volume.calibration, title=volume.title, labels=labels)

    return volume, sidecar.get('metadata')
