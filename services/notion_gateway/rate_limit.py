"""Rate limit handling for Notion API calls."""

import asyncio
import logging
from typing import Callable, Any
from functools import wraps

from notion_client import APIErrorCode
from notion_client.errors import APIResponseError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 1.0


def is_rate_limited(error: APIResponseError) -> bool:
    return error.code == APIErrorCode.RateLimited or getattr(error, 'status', None) == 429


def handle_rate_limit(max_retries: int = 3):
    """
    Decorator retrying a coroutine when Notion answers 429.

    Notion sends a Retry-After header with rate limited responses; the
    wrapper sleeps that long (cooperatively) before trying again. Other API
    errors are re-raised untouched.

    Args:
        max_retries: Maximum number of retry attempts

    Returns:
        Decorated coroutine function
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            retries = 0

            while True:
                try:
                    return await func(*args, **kwargs)

                except APIResponseError as e:
                    if not is_rate_limited(e):
                        raise

                    retries += 1
                    if retries > max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded for rate limit")
                        raise

                    retry_after = _extract_retry_after(e)
                    logger.warning(
                        f"Rate limit hit. Waiting {retry_after} seconds before retry "
                        f"(attempt {retries}/{max_retries})"
                    )
                    await asyncio.sleep(retry_after)

        return wrapper
    return decorator


def _extract_retry_after(error: APIResponseError) -> float:
    """
    Extract retry-after duration from a Notion API error.

    Args:
        error: APIResponseError from the Notion client

    Returns:
        Number of seconds to wait before retrying
    """
    headers = getattr(error, 'headers', None)
    if headers is None:
        response = getattr(error, 'response', None)
        headers = getattr(response, 'headers', None)

    if headers:
        retry_after = headers.get('Retry-After') or headers.get('retry-after')
        if retry_after:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                logger.warning(f"Unparseable Retry-After header: {retry_after!r}")

    return DEFAULT_RETRY_AFTER
