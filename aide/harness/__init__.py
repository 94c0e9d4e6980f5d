"""Agent harness: the loop, the safety gate and the retry policy."""
from aide.harness.loop import AgenticLoop, LoopResult
from aide.harness.retry import RetryConfig, with_retries
from aide.harness.safety import ApprovalState, ErrorGate, SafetyGate

__all__ = [
    "AgenticLoop",
    "LoopResult",
    "SafetyGate",
    "ErrorGate",
    "ApprovalState",
    "RetryConfig",
    "with_retries",
]
