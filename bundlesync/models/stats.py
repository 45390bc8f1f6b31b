"""
Dataclass for tracking the statistics of one batch transfer.
"""

import time
from dataclasses import dataclass, field


@dataclass
class DownloadStats:
    """Tracks counts, bytes and real-time speed for a batch of bundle transfers."""

    total_count: int = 0
    total_bytes: int = 0
    completed_count: int = 0
    completed_bytes: int = 0
    failed_count: int = 0
    retry_count: int = 0

    # Real-time speed calculation fields
    current_speed_bps: float = 0.0
    peak_speed_bps: float = 0.0
    _speed_samples: list[float] = field(default_factory=list, repr=False)
    _last_progress_time: float = field(default=0.0, repr=False)
    _last_progress_bytes: int = field(default=0, repr=False)

    def __post_init__(self):
        self._last_progress_time = time.monotonic()

    @property
    def remaining_count(self) -> int:
        return self.total_count - self.completed_count

    def update_speed_stats(self, total_bytes_so_far: int) -> None:
        """
        Updates the transfer speed from the cumulative byte count.

        Args:
            total_bytes_so_far: Bytes completed in this batch so far.
        """
        now = time.monotonic()
        elapsed = now - self._last_progress_time

        # Update speed roughly twice per second
        if elapsed > 0.5:
            bytes_diff = total_bytes_so_far - self._last_progress_bytes
            if bytes_diff > 0:
                self._speed_samples.append(bytes_diff / elapsed)
                # Keep a sliding window of the last 10 speed samples
                if len(self._speed_samples) > 10:
                    self._speed_samples.pop(0)
                self.current_speed_bps = sum(self._speed_samples) / len(
                    self._speed_samples
                )
                self.peak_speed_bps = max(self.peak_speed_bps, self.current_speed_bps)

            self._last_progress_time = now
            self._last_progress_bytes = total_bytes_so_far
