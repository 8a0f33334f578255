"""Fetch a URL and turn it into text suitable for a language model"""

from typing import Optional, Tuple

from loguru import logger

from .cancellation import CancellationToken
from .config import STREAM_CHUNK_SIZE
from .fetch_stream import StreamFetcher, collect
from .markdown_stream import html_to_markdown_string

SIMPLIFY_FAILED = "<error>Page failed to be simplified from HTML</error>"


def is_html(content_type: Optional[str]) -> bool:
    return bool(content_type) and "text/html" in content_type.lower()


async def process_url(
    fetcher: StreamFetcher,
    url: str,
    user_agent: str,
    raw: bool = False,
    cancel: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> Tuple[str, str]:
    """
    Fetch ``url`` and return ``(content, prefix)``.

    HTML is converted to Markdown unless ``raw`` is set; anything else is
    returned as-is with a prefix naming its content type.

    Args:
        fetcher: Configured stream fetcher
        url: URL to fetch
        user_agent: User-Agent header value
        raw: Return the body unconverted
        cancel: Optional cancellation token for the fetch and the conversion
        timeout: Optional deadline in seconds for the fetch
        chunk_size: Markdown chunk size used while converting

    Raises:
        FetchError: when the fetch fails
        ExtractError: when HTML conversion fails
    """
    result = await fetcher.stream_fetch(url, user_agent, cancel=cancel, timeout=timeout)
    content_type = result.content_type

    if not raw and is_html(content_type):
        async with result.body:
            markdown = await html_to_markdown_string(
                result.body, chunk_size=chunk_size, cancel=cancel
            )
        if not markdown.strip():
            logger.warning(f"No readable content extracted from {url}")
            return SIMPLIFY_FAILED, ""
        logger.info(f"Converted {url} to {len(markdown)} chars of markdown")
        return markdown.strip(), ""

    content = await collect(result.body)
    ctype = content_type or "unknown"
    if raw:
        return content, f"Here is the raw {ctype} content:"
    return (
        content,
        f"Content type {ctype} cannot be simplified to markdown, but here is the raw content:",
    )
