import numpy as np

PROFILE_BANDS = 8


def frame_energy(frame) -> float:
    """Mean bin value of a frame (0.0-1.0), 0.0 for an empty frame."""
    data = np.asarray(frame, dtype=np.float64)
    if data.size == 0:
        return 0.0
    return float(np.mean(data))


def frequency_profile(frame, band_count: int = PROFILE_BANDS) -> np.ndarray:
    """Reduce a frame to the mean energy of each of `band_count` equal bands.

    Band size is floor(len(frame) / band_count); bins past the last full band
    are ignored. Frames shorter than `band_count` yield an all-zero profile.
    """
    data = np.asarray(frame, dtype=np.float64)
    band_size = len(data) // band_count
    if band_size == 0:
        return np.zeros(band_count)
    return data[:band_size * band_count].reshape(band_count, band_size).mean(axis=1)


def cosine_similarity(profile_a, profile_b) -> float:
    """Shape similarity of two profiles, independent of loudness.

    Returns 0.0 when either profile is missing, the lengths differ, or
    either vector has zero norm.
    """
    if profile_a is None or profile_b is None:
        return 0.0
    a = np.asarray(profile_a, dtype=np.float64)
    b = np.asarray(profile_b, dtype=np.float64)
    if a.shape != b.shape or a.size == 0:
        return 0.0

    norm_a = float(np.sqrt(np.dot(a, a)))
    norm_b = float(np.sqrt(np.dot(b, b)))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return min(1.0, float(np.dot(a, b)) / (norm_a * norm_b))


def split_band_energy(frame) -> tuple[float, float]:
    """Mean energy of the lower and upper halves of a frame, by bin index."""
    data = np.asarray(frame, dtype=np.float64)
    mid = len(data) // 2
    low = data[:mid]
    high = data[mid:]
    low_energy = float(np.mean(low)) if low.size else 0.0
    high_energy = float(np.mean(high)) if high.size else 0.0
    return low_energy, high_energy
