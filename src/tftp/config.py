from __future__ import annotations

from dataclasses import dataclass

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_S


@dataclass(frozen=True, slots=True)
class TransferConfig:
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_retries: int = DEFAULT_MAX_RETRIES
    # linger DALLY_TIMEOUTS (two) timeout periods after the final ACK to
    # re-ack a retransmitted last block
    dally: bool = True
    keep_partial: bool = False

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be positive, got {self.timeout_s}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
