"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely. Defaults
are documented on each field and resolved once when a component is built.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for the retry executor.

    - max_retries: retries after the first attempt (total tries = max_retries + 1)
    - initial_delay_ms: base delay, multiplied by backoff_factor ** attempt
    - max_delay_ms: hard ceiling for any single delay, jitter included
    - use_jitter: perturb each delay by up to +/- jitter_ratio
    - timeout_ms: optional per-attempt timeout
    """

    max_retries: int = 3
    initial_delay_ms: float = 500.0
    max_delay_ms: float = 30000.0
    backoff_factor: float = 2.0
    use_jitter: bool = True
    timeout_ms: Optional[float] = None
    jitter_ratio: float = 0.15

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive when set")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")


@dataclass(frozen=True)
class SyncConfig:
    """Default options for media group synchronization."""

    force_sync: bool = False
    sync_edit_history: bool = False
    # Wrap each sibling write in the retry executor when one is provided.
    retry_writes: bool = True


@dataclass(frozen=True)
class ParserConfig:
    """Caption parser thresholds."""

    escalation_name_length: int = 23
    reasonable_quantity_max: int = 10000

    def __post_init__(self) -> None:
        if self.escalation_name_length <= 0:
            raise ValueError("escalation_name_length must be positive")
        if self.reasonable_quantity_max <= 1:
            raise ValueError("reasonable_quantity_max must be > 1")


@dataclass(frozen=True)
class RecoveryConfig:
    """Recovery sweep settings.

    Errored messages are reset to pending only while their retry_count is
    below max_retry_count; processing claims older than stalled_after_minutes
    are treated as abandoned.
    """

    max_retry_count: int = 5
    stalled_after_minutes: int = 15

    def __post_init__(self) -> None:
        if self.max_retry_count < 0:
            raise ValueError("max_retry_count must be >= 0")
        if self.stalled_after_minutes <= 0:
            raise ValueError("stalled_after_minutes must be positive")
