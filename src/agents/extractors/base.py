"""Request helpers shared by the AI plan extractor: retries, instructions, JSON recovery."""
import json
import re
import time
import logging
from pathlib import Path
from typing import Callable, TypeVar, Any, Dict, Tuple, Type
from functools import wraps

import anthropic

from extraction.errors import AiExtractionError, PipelineCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Request errors that fail the same way on every attempt
NON_RETRIABLE: Tuple[Type[BaseException], ...] = (
    PipelineCancelled,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.BadRequestError,
    anthropic.NotFoundError,
)

FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL | re.IGNORECASE)


def retry_with_backoff(max_retries: int = 3, base_delay: float = 1.0) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry a model request with exponential backoff.

    Cancellation and client errors (bad key, bad request) are not retried.

    Args:
        max_retries: Total attempts, including the first
        base_delay: Seconds before the second attempt; doubled each time

    Returns:
        Decorator whose wrapped call raises AiExtractionError once attempts run out
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempts = max(1, max_retries)
            last_error: Exception = AiExtractionError(f"{func.__name__} was not attempted")
            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except NON_RETRIABLE as e:
                    if isinstance(e, PipelineCancelled):
                        raise
                    logger.error(f"{func.__name__} rejected by the API: {e}")
                    raise AiExtractionError(f"{func.__name__} failed: {e}") from e
                except Exception as e:
                    last_error = e
                    if attempt + 1 < attempts:
                        delay = base_delay * 2 ** attempt
                        logger.warning(f"{func.__name__} attempt {attempt + 1}/{attempts} failed: {e}; retrying in {delay:.0f}s")
                        time.sleep(delay)
            logger.error(f"{func.__name__} failed after {attempts} attempt(s)")
            raise AiExtractionError(f"{func.__name__} failed: {last_error}") from last_error
        return wrapper
    return decorator


def load_instructions(instructions_dir: Path, *filenames: str) -> str:
    """Join instruction markdown files into one system prompt, in the order given."""
    parts = []
    for filename in filenames:
        path = Path(instructions_dir) / filename
        if not path.is_file():
            raise FileNotFoundError(f"Instruction file not found: {path}")
        parts.append(path.read_text(encoding="utf-8").strip())
    return "\n\n---\n\n".join(parts)


def _as_object(candidate: str):
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_from_response(response: str) -> Dict[str, Any]:
    """
    Recover the JSON object from a model reply.

    Tries the whole reply, then each fenced code block, then the span from
    the first '{' to the last '}'.

    Raises:
        ValueError: If no JSON object can be recovered
    """
    candidates = [response]
    candidates.extend(m.group(1) for m in FENCED_BLOCK.finditer(response))
    start, end = response.find('{'), response.rfind('}')
    if start != -1 and end > start:
        candidates.append(response[start:end + 1])

    for candidate in candidates:
        parsed = _as_object(candidate.strip())
        if parsed is not None:
            return parsed
    raise ValueError("No valid JSON found in model response")
