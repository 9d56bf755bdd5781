# reducedemb/quantization.py
from dataclasses import dataclass

import numpy as np

import config
from reducedemb.errors import InvalidParameter


def check_bits(bits):
    if isinstance(bits, bool) or not isinstance(bits, (int, np.integer)):
        raise InvalidParameter(f"bit width must be an integer, got {bits!r}")
    if not 1 <= bits <= config.MAX_QUANT_BITS:
        raise InvalidParameter(f"bit width must be in [1, {config.MAX_QUANT_BITS}], got {bits}")
    return int(bits)


def code_dtype(bits):
    for dtype in (np.uint8, np.uint16, np.uint32):
        if bits <= np.iinfo(dtype).bits:
            return dtype
    return np.uint64


@dataclass(frozen=True)
class QuantizationParams:
    bits: int
    mode: str
    scale: np.ndarray
    zero_point: np.ndarray

    @property
    def levels(self):
        return (1 << self.bits) - 1

    @property
    def max_error(self):
        return self.scale / 2.0

    def as_dict(self):
        return {
            "bits": self.bits,
            "mode": self.mode,
            "scale": np.atleast_1d(self.scale).tolist(),
            "zero_point": np.atleast_1d(self.zero_point).tolist(),
        }


class AffineQuantizer:
    """
    Maps real values to unsigned integer codes: q = round(x / scale + zero_point).

    The scale spreads the observed [min, max] range over 2^bits - 1 steps,
    either per dimension or globally. Inside the fitted range the round trip
    error is at most scale / 2; values outside are clipped.
    """

    def __init__(self, bits, mode=config.QUANT_MODE):
        if mode not in config.QUANT_MODES:
            raise InvalidParameter(f"unknown quantization mode {mode!r}, expected one of {config.QUANT_MODES}")
        self.bits = check_bits(bits)
        self.mode = mode
        self.scale_ = None
        self.zero_point_ = None
        self.min_ = None
        self.max_ = None

    @property
    def levels(self):
        return (1 << self.bits) - 1

    def fit(self, X):
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[np.newaxis]

        if self.mode == "global":
            self.min_ = np.float64(np.min(X))
            self.max_ = np.float64(np.max(X))
        else:
            self.min_ = np.min(X, axis=0)
            self.max_ = np.max(X, axis=0)

        span = self.max_ - self.min_
        # Constant dimensions get a unit scale; every value maps to code 0
        self.scale_ = np.where(span > 0, span / self.levels, 1.0)
        self.zero_point_ = -self.min_ / self.scale_

        return self

    def _check_fitted(self):
        if self.scale_ is None:
            raise ValueError("Quantizer not fitted. Run fit first.")

    def quantize(self, X):
        self._check_fitted()
        X = np.asarray(X, dtype=np.float64)
        codes = np.rint(X / self.scale_ + self.zero_point_)
        return np.clip(codes, 0, self.levels).astype(code_dtype(self.bits))

    def dequantize(self, Q):
        self._check_fitted()
        return (np.asarray(Q, dtype=np.float64) - self.zero_point_) * self.scale_

    def round_trip(self, X):
        return self.dequantize(self.quantize(X))

    def params(self):
        self._check_fitted()
        return QuantizationParams(self.bits, self.mode, np.asarray(self.scale_), np.asarray(self.zero_point_))
