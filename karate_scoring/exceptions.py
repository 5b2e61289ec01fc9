"""
karate_scoring/exceptions.py
Typed exceptions for the scoring and advancement engine

Every exception is terminal for the triggering call. The engine never
retries internally; the API layer decides retry/backoff.
"""
from typing import Any, Dict, List, Optional

from fastapi import status

from karate_scoring.errors import APIError, ErrorCode


class ScoringEngineError(APIError):
    """Base exception for the engine"""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error: str = "Scoring Error"
    code: str = ErrorCode.INVALID_INPUT

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(
            status_code=self.status_code,
            error=self.error,
            message=message,
            code=code or self.code,
            details=details
        )


class ValidationError(ScoringEngineError):
    """
    Malformed input.

    Examples:
    - Kata score outside [5.0, 10.0]
    - Tally delta that would drive a count below zero
    - Participant that is not seated in the match
    """
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Validation Error"
    code = ErrorCode.VALIDATION_ERROR


class NotFoundError(ScoringEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None, code: Optional[str] = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, code=code)


class StateTransitionError(ScoringEngineError):
    """Illegal match status transition or mutation of a completed match."""
    status_code = status.HTTP_409_CONFLICT
    error = "Invalid State"
    code = ErrorCode.STATE_TRANSITION_INVALID

    def __init__(self, message: str, from_state: str, to_state: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message, details={"from_state": from_state, "to_state": to_state})


class IncompleteRoundError(ScoringEngineError):
    """Finalize attempted while members of the round are not finalized."""
    status_code = status.HTTP_409_CONFLICT
    error = "Incomplete Round"
    code = ErrorCode.INCOMPLETE_ROUND

    def __init__(self, round_label: str, missing: List[int]):
        self.missing = list(missing)
        super().__init__(
            f"Round '{round_label}' has {len(self.missing)} unfinished member(s)",
            details={"round": round_label, "missing": self.missing}
        )


class InsufficientCandidatesError(ScoringEngineError):
    """Not enough finalized performances to fill the next round."""
    status_code = status.HTTP_409_CONFLICT
    error = "Insufficient Candidates"
    code = ErrorCode.INSUFFICIENT_CANDIDATES

    def __init__(self, round_label: str, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Round '{round_label}' needs {required} finalized performances to advance, "
            f"only {available} available",
            details={"round": round_label, "required": required, "available": available}
        )


class AlreadyFinalizedError(ScoringEngineError):
    status_code = status.HTTP_409_CONFLICT
    error = "Already Finalized"
    code = ErrorCode.ALREADY_FINALIZED

    def __init__(self, category_id: int, round_label: str, message: Optional[str] = None):
        super().__init__(
            message or f"Round '{round_label}' of category {category_id} is already finalized",
            details={"category_id": category_id, "round": round_label}
        )


class TieError(ScoringEngineError):
    """Exactly equal kumite scores; requires manual adjudication."""
    status_code = status.HTTP_409_CONFLICT
    error = "Tie"
    code = ErrorCode.TIE

    def __init__(self, match_id: int, scores: Dict[int, Any]):
        self.match_id = match_id
        self.scores = scores
        super().__init__(
            f"Match {match_id} is tied; an explicit decision is required",
            details={"match_id": match_id, "scores": {str(k): str(v) for k, v in scores.items()}}
        )


class IncompleteDataError(ScoringEngineError):
    status_code = status.HTTP_409_CONFLICT
    error = "Incomplete Data"
    code = ErrorCode.INCOMPLETE_DATA

    def __init__(self, match_id: int, missing: List[int]):
        self.missing = list(missing)
        super().__init__(
            f"Match {match_id} has no tally for participant(s) {self.missing}",
            details={"match_id": match_id, "missing": self.missing}
        )


class ConcurrencyConflictError(ScoringEngineError):
    """Lock timeout or version conflict; retry against the current state."""
    status_code = status.HTTP_409_CONFLICT
    error = "Concurrency Conflict"
    code = ErrorCode.CONCURRENCY_CONFLICT
