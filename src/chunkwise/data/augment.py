"""Context augmentation: stack each frame with its neighbors.

Pure functions over a single unit's [frames, dim] array. Neighbors that fall
outside the unit repeat the nearest boundary frame (no zero padding), so the
first frame of an utterance sees copies of itself on the left.

Output layout per frame: [t - left, ..., t, ..., t + right] concatenated, i.e.
``(left + right + 1) * dim`` columns.
"""

from __future__ import annotations

import numpy as np


def augmentation_extent(feature_dim: int, augmented_dim: int) -> int:
    """Symmetric extent implied by a declared augmented width.

    :param int feature_dim: Dimension of one raw frame.
    :param int augmented_dim: Declared width after augmentation.
    :raises ValueError: If `augmented_dim` is not an odd multiple of `feature_dim`.
    :return int: Frames of context on each side.
    """
    if feature_dim <= 0:
        raise ValueError(f"feature_dim must be positive, got {feature_dim}")
    window, rem = divmod(augmented_dim, feature_dim)
    if rem != 0 or window % 2 == 0:
        raise ValueError(
            f"augmented dimension {augmented_dim} is not an odd multiple of "
            f"feature dimension {feature_dim}"
        )
    return window // 2


def _neighbor_index(n: int, t: np.ndarray, left: int, right: int) -> np.ndarray:
    offsets = np.arange(-left, right + 1)
    return np.clip(t[:, None] + offsets[None, :], 0, n - 1)


def augment_utterance(frames: np.ndarray, left: int, right: int) -> np.ndarray:
    """Augment every frame of a unit.

    :param np.ndarray frames: [n, dim] frames of one unit.
    :param int left: Frames of left context.
    :param int right: Frames of right context.
    :return np.ndarray: [n, (left + right + 1) * dim] array.
    """
    n, dim = frames.shape
    if left == 0 and right == 0:
        return np.array(frames, copy=True)
    idx = _neighbor_index(n, np.arange(n), left, right)
    return frames[idx].reshape(n, (left + right + 1) * dim)


def augment_neighbors(frames: np.ndarray, t: int, left: int, right: int) -> np.ndarray:
    """Augment a single frame `t` of a unit.

    :param np.ndarray frames: [n, dim] frames of one unit.
    :param int t: Frame index within the unit.
    :param int left: Frames of left context.
    :param int right: Frames of right context.
    :raises IndexError: If `t` is outside the unit.
    :return np.ndarray: [(left + right + 1) * dim] vector.
    """
    n, dim = frames.shape
    if not 0 <= t < n:
        raise IndexError(f"frame {t} outside unit of {n} frames")
    idx = _neighbor_index(n, np.asarray([t]), left, right)[0]
    return frames[idx].reshape((left + right + 1) * dim)
