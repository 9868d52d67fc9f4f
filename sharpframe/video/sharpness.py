"""Perceptual sharpness scoring for downscaled RGBA frames.

The score blends five focus measures computed over the interior of the
luminance image (the 1-pixel border is excluded):

- variance of the 4-neighbour Laplacian,
- Tenengrad energy (mean squared Sobel magnitude),
- Brenner gradient (squared differences two pixels apart),
- an approximate strong-edge ratio derived from the Sobel magnitude spread,
- global RMS contrast.

Unbounded terms are log-compressed before blending so no single measure
dominates.  Scores are only comparable between frames of the same video at
the same analysis resolution.
"""

import math

import cv2
import numpy as np

# Rec. 709 luma coefficients
_LUMA = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)

_W_LAPLACIAN = 0.30
_W_TENENGRAD = 0.25
_W_BRENNER = 0.20
_W_EDGE_RATIO = 0.15
_W_CONTRAST = 0.10

_EDGE_TAIL = 0.159  # P(Z > 1) for a standard normal
_CONTRAST_SCALE = 128.0
_EPS = 1e-7


def to_luminance(pixels, width: int, height: int) -> np.ndarray:
    """Return the ``(height, width)`` float64 luminance of an RGBA buffer.

    ``pixels`` may be an ``(h, w, 4)`` array or any flat buffer holding
    ``width * height * 4`` bytes.  The alpha channel is ignored.
    """
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(pixels, dtype=np.uint8)
    else:
        arr = np.asarray(pixels)
    rgba = arr.reshape(height, width, -1)
    return rgba[..., :3].astype(np.float64) @ _LUMA


def compute_sharpness(pixels, width: int, height: int) -> float:
    """Return the blended sharpness score of an RGBA frame.

    Larger values mean sharper frames.  Frames narrower or shorter than
    3 pixels have no interior and score exactly ``0.0``.
    """
    if width < 3 or height < 3:
        return 0.0

    gray = to_luminance(pixels, width, height)
    processed = (width - 2) * (height - 2)
    inner = (slice(1, -1), slice(1, -1))

    lap = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)[inner]
    lap_mean = lap.sum() / processed
    lap_var = max(0.0, float((lap * lap).sum() / processed - lap_mean * lap_mean))

    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)[inner]
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)[inner]
    grad_sq = gx * gx + gy * gy
    tenengrad = float(grad_sq.sum())
    grad_mean = float(np.sqrt(grad_sq).sum() / processed)
    grad_var = max(0.0, tenengrad / processed - grad_mean * grad_mean)
    grad_std = math.sqrt(grad_var)

    # Interior pixels paired with the pixel two to the right / two below,
    # wherever that neighbour is still inside the image.
    dx = gray[1:-1, 3:] - gray[1:-1, 1:-2]
    dy = gray[3:, 1:-1] - gray[1:-2, 1:-1]
    brenner = float((dx * dx).sum() + (dy * dy).sum())

    rms_contrast = float(np.sqrt(np.mean((gray - gray.mean()) ** 2)))

    # Gaussian-tail estimate of the strong-edge fraction, not an exact count
    edge_ratio = min(1.0, _EDGE_TAIL * grad_std / (grad_mean + _EPS))

    return (
        _W_LAPLACIAN * math.log10(lap_var + 1)
        + _W_TENENGRAD * math.log10(tenengrad / processed + 1)
        + _W_BRENNER * math.log10(brenner / processed + 1)
        + _W_EDGE_RATIO * edge_ratio
        + _W_CONTRAST * (rms_contrast / _CONTRAST_SCALE)
    )
