import numpy as np

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0


class LevelMeter:
    """Rolling analysis window over the most recent captured samples.

    Byte outputs follow the usual analyser conventions: time-domain bytes
    centre on 128 for silence, frequency bytes map [MIN_DECIBELS,
    MAX_DECIBELS] onto [0, 255].
    """

    def __init__(self, fft_size: int = 2048) -> None:
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        self._fft_size = fft_size
        self._window = np.zeros(fft_size, dtype=np.float32)
        self._blackman = np.blackman(fft_size)

    @property
    def fft_size(self) -> int:
        return self._fft_size

    @property
    def frequency_bin_count(self) -> int:
        return self._fft_size // 2

    @property
    def rms(self) -> float:
        return float(np.sqrt(np.mean(self._window.astype(np.float64) ** 2)))

    @property
    def peak(self) -> float:
        return float(np.max(np.abs(self._window)))

    def push(self, samples) -> None:
        samples = np.asarray(samples, dtype=np.float32).ravel()
        if len(samples) >= self._fft_size:
            self._window = samples[-self._fft_size:].copy()
        elif len(samples):
            self._window = np.concatenate((self._window[len(samples):], samples))

    def time_domain_bytes(self) -> np.ndarray:
        scaled = np.floor(128.0 * (1.0 + self._window))
        return np.clip(scaled, 0, 255).astype(np.uint8)

    def frequency_bytes(self) -> np.ndarray:
        spectrum = np.abs(np.fft.rfft(self._window * self._blackman))[: self.frequency_bin_count]
        magnitude = np.maximum(spectrum / self._fft_size, 1e-12)
        decibels = 20.0 * np.log10(magnitude)
        scaled = 255.0 * (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS)
        return np.clip(np.floor(scaled), 0, 255).astype(np.uint8)

    def reset(self) -> None:
        self._window = np.zeros(self._fft_size, dtype=np.float32)

    def to_dict(self) -> dict:
        return {
            "rms": round(self.rms, 4),
            "peak": round(self.peak, 4),
            "time_domain": self.time_domain_bytes().tolist(),
            "frequency": self.frequency_bytes().tolist(),
        }
