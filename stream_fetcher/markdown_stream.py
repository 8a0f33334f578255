"""Incremental HTML to Markdown conversion with bounded memory.

:class:`MarkdownFormatter` is a state machine consuming one
:class:`HtmlEvent` at a time. It keeps a frame per open tag, a list-context
stack and an output buffer that is cut into chunks whenever it grows past
``chunk_size`` at a safe point (outside hidden regions, links and inline
formatting spans). Paragraph and line breaks are recorded lazily and only
written before the next piece of content, so output never starts or ends
with blank lines and is identical however the input was split.

:class:`HtmlEventParser` adapts the standard library's incremental
``html.parser.HTMLParser`` to that event interface.
"""

import re
from collections import deque
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import AsyncIterable, AsyncIterator, Callable, Deque, Dict, Iterable, List, Optional

from loguru import logger

from .cancellation import CancellationToken
from .config import STREAM_CHUNK_SIZE
from .exceptions import ExtractError, FetchCancelledError, FetchError
from .models import FormatterState

SKIP_TAGS = frozenset(
    {
        "template",
        "script",
        "style",
        "img",
        "svg",
        "nav",
        "footer",
        "header",
        "head",
        "button",
        "form",
        "input",
        "textarea",
        "select",
    }
)

VOID_TAGS = frozenset(
    {
        "area",
        "base",
        "br",
        "col",
        "embed",
        "hr",
        "img",
        "input",
        "link",
        "meta",
        "param",
        "source",
        "track",
        "wbr",
    }
)

BLOCK_TAGS = frozenset(
    {
        "p",
        "div",
        "section",
        "article",
        "main",
        "aside",
        "figure",
        "figcaption",
        "table",
        "tr",
        "dl",
        "dt",
        "dd",
        "details",
        "summary",
        "address",
    }
)

HEADING_LEVELS = {f"h{level}": level for level in range(1, 7)}

INLINE_MARKERS = {"strong": "**", "b": "**", "em": "_", "i": "_"}

CELL_TAGS = frozenset({"td", "th"})

HIDDEN_CLASS_SNIPPETS = ("hide", "sr-only", "d-none", "toc")

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class HtmlEvent:
    """One lexical event: an open tag, a run of text or a close tag"""

    kind: str
    name: str = ""
    attrs: Dict[str, Optional[str]] = field(default_factory=dict)
    data: str = ""

    @classmethod
    def open(cls, name: str, attrs: Optional[Dict[str, Optional[str]]] = None) -> "HtmlEvent":
        return cls("open", name=name.lower(), attrs=dict(attrs or {}))

    @classmethod
    def text(cls, data: str) -> "HtmlEvent":
        return cls("text", data=data)

    @classmethod
    def close(cls, name: str) -> "HtmlEvent":
        return cls("close", name=name.lower())


@dataclass
class Frame:
    """An open tag on the formatter's stack"""

    tag: str
    skip: bool = False
    preserve_whitespace: bool = False
    opening_marker: Optional[str] = None
    closing_marker: Optional[str] = None
    marker_written: bool = False
    is_block: bool = False
    is_blockquote: bool = False
    anchor_href: Optional[str] = None
    anchor_text_start: Optional[int] = None
    anchor_text_state: Optional[tuple] = None
    strip_leading_newline: bool = False


@dataclass
class ListContext:
    ordered: bool
    index: int = 0


def has_hidden_signal(attrs: Dict[str, Optional[str]]) -> bool:
    """True for elements marked hidden, aria-hidden, button-typed or hidden by class"""
    if "hidden" in attrs:
        return True
    if "aria-hidden" in attrs and attrs["aria-hidden"] != "false":
        return True
    if attrs.get("type") == "button":
        return True
    class_name = attrs.get("class") or ""
    return any(snippet in class_name for snippet in HIDDEN_CLASS_SNIPPETS)


def _escape_link_text(text: str) -> str:
    return text.replace("[", r"\[").replace("]", r"\]")


def _escape_href(href: str) -> str:
    return href.strip().replace(" ", "%20").replace("(", "%28").replace(")", "%29")


class MarkdownFormatter:
    """
    Streaming HTML-to-Markdown state machine.

    Feed events with :meth:`step`, collect finished chunks with :meth:`drain`
    and call :meth:`finish` at end of input.
    """

    def __init__(
        self,
        chunk_size: int = STREAM_CHUNK_SIZE,
        cancel: Optional[CancellationToken] = None,
    ):
        self.chunk_size = chunk_size
        self.cancel = cancel
        self.state = FormatterState.STREAMING

        self._frames: List[Frame] = []
        self._lists: List[ListContext] = []
        self._awaiting_content = 0
        self._skip_depth = 0
        self._quote_depth = 0
        self._preserve_depth = 0
        self._pre_depth = 0
        self._open_spans = 0

        self._buffer = ""
        self._chunks: Deque[str] = deque()

        # Writer state, kept across flushes
        self._emitted = False
        self._last_char = "\n"
        self._at_line_start = True
        self._trailing_newlines = 0
        self._pending_breaks = 0
        self._break_quote_depth = 0
        self._pending_space = False
        self._after_marker = False

    # -- driving ---------------------------------------------------------

    def check_cancelled(self) -> bool:
        """Move to CANCELLED if the token fired; True when cancelled"""
        if self.state is FormatterState.STREAMING and (
            self.cancel is not None and self.cancel.cancelled
        ):
            self._abort(FormatterState.CANCELLED)
        return self.state is FormatterState.CANCELLED

    def step(self, event: HtmlEvent) -> None:
        """Consume one event"""
        if self.state is not FormatterState.STREAMING or self.check_cancelled():
            return

        try:
            if event.kind == "open":
                self._on_open(event.name, event.attrs)
            elif event.kind == "text":
                self._on_text(event.data)
                self._maybe_flush()
            elif event.kind == "close":
                self._on_close(event.name)
                self._maybe_flush()
            else:
                raise ExtractError(f"Unknown HTML event kind: {event.kind}")
        except Exception:
            self._abort(FormatterState.ERRORED)
            raise

    def drain(self) -> List[str]:
        """Finished chunks since the last call"""
        chunks = list(self._chunks)
        self._chunks.clear()
        return chunks

    def finish(self) -> None:
        """Close any open frames and emit the remaining buffer"""
        if self.state is not FormatterState.STREAMING or self.check_cancelled():
            return
        while self._frames:
            self._pop_frame()
        if self._buffer:
            self._chunks.append(self._buffer)
            self._buffer = ""
        self.state = FormatterState.COMPLETED

    def fail(self) -> None:
        self._abort(FormatterState.ERRORED)

    def _abort(self, state: FormatterState) -> None:
        self.state = state
        self._buffer = ""
        self._chunks.clear()

    # -- writer ----------------------------------------------------------

    def _write(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        self._emitted = True
        self._after_marker = False
        self._last_char = text[-1]
        self._at_line_start = self._last_char == "\n"
        stripped = text.rstrip("\n")
        if stripped:
            self._trailing_newlines = len(text) - len(stripped)
        else:
            self._trailing_newlines += len(text)

    def _quote_prefix(self, depth: int) -> str:
        return "> " * depth

    def _request_break(self, newlines: int) -> None:
        self._pending_space = False
        if not self._emitted:
            return
        if self._pending_breaks:
            self._break_quote_depth = min(self._break_quote_depth, self._quote_depth)
        else:
            self._break_quote_depth = self._quote_depth
        self._pending_breaks = max(self._pending_breaks, newlines)

    def _line_break(self) -> None:
        self._pending_space = False
        if not self._emitted:
            return
        if not self._pending_breaks:
            self._break_quote_depth = self._quote_depth
        self._pending_breaks = min(self._pending_breaks + 1, 2)

    def _begin_content(self) -> None:
        """Write owed breaks, quote prefix, pending space and opening markers"""
        if self._pending_breaks:
            missing = self._pending_breaks - self._trailing_newlines
            for _ in range(max(0, missing)):
                if self._at_line_start and self._break_quote_depth:
                    self._write(self._quote_prefix(self._break_quote_depth).rstrip())
                self._write("\n")
            self._pending_breaks = 0
            self._pending_space = False

        if self._at_line_start and self._quote_depth:
            self._write(self._quote_prefix(self._quote_depth))

        if (
            self._pending_space
            and not self._at_line_start
            and self._last_char != " "
        ):
            self._write(" ")
        self._pending_space = False

        if not self._awaiting_content:
            return
        # Deferred link starts and opening markers, in stack order
        for frame in self._frames:
            if frame.anchor_href is not None and frame.anchor_text_start is None:
                frame.anchor_text_start = len(self._buffer)
                frame.anchor_text_state = (
                    self._last_char,
                    self._at_line_start,
                    self._trailing_newlines,
                )
            elif frame.opening_marker is not None and not frame.marker_written:
                self._write(frame.opening_marker)
                frame.marker_written = True
        self._awaiting_content = 0

    def _write_verbatim(self, text: str) -> None:
        if not self._quote_depth:
            self._write(text)
            return
        for line in text.splitlines(keepends=True):
            if self._at_line_start:
                self._write(self._quote_prefix(self._quote_depth))
            self._write(line)

    def _maybe_flush(self) -> None:
        if self._skip_depth or self._open_spans:
            return
        if len(self._buffer) >= self.chunk_size:
            logger.debug(f"Flushing {len(self._buffer)} chars of markdown")
            self._chunks.append(self._buffer)
            self._buffer = ""

    # -- events ----------------------------------------------------------

    def _on_open(self, tag: str, attrs: Dict[str, Optional[str]]) -> None:
        hidden = self._skip_depth > 0 or tag in SKIP_TAGS or has_hidden_signal(attrs)

        if tag in VOID_TAGS:
            if hidden:
                return
            if tag == "br":
                self._line_break()
            elif tag == "hr":
                self._request_break(2)
                self._begin_content()
                self._write("---")
                self._request_break(2)
            return

        if hidden:
            self._skip_depth += 1
            self._frames.append(Frame(tag, skip=True))
            return

        frame = Frame(tag)

        if tag in BLOCK_TAGS:
            if not self._after_marker:
                self._request_break(2)
            frame.is_block = True
        elif tag in HEADING_LEVELS:
            self._request_break(2)
            self._begin_content()
            self._write("#" * HEADING_LEVELS[tag] + " ")
            self._after_marker = True
            frame.is_block = True
        elif tag in INLINE_MARKERS:
            self._open_span(frame, INLINE_MARKERS[tag])
        elif tag == "code":
            frame.preserve_whitespace = True
            if not self._pre_depth:
                self._open_span(frame, "`")
        elif tag == "pre":
            self._request_break(2)
            self._begin_content()
            self._write("```\n")
            frame.preserve_whitespace = True
            frame.strip_leading_newline = True
            frame.is_block = True
            self._pre_depth += 1
        elif tag == "blockquote":
            self._request_break(2)
            self._quote_depth += 1
            frame.is_blockquote = True
        elif tag in ("ul", "ol"):
            self._request_break(1 if self._lists else 2)
            self._lists.append(ListContext(ordered=tag == "ol"))
        elif tag == "li":
            self._open_list_item()
        elif tag == "a":
            href = attrs.get("href")
            if href is not None:
                frame.anchor_href = href
                self._open_spans += 1
                self._awaiting_content += 1

        if frame.preserve_whitespace:
            self._preserve_depth += 1
        self._frames.append(frame)

    def _open_span(self, frame: Frame, marker: str) -> None:
        frame.opening_marker = marker
        frame.closing_marker = marker
        self._open_spans += 1
        self._awaiting_content += 1

    def _open_list_item(self) -> None:
        self._request_break(1)
        context = self._lists[-1] if self._lists else None
        indent = "  " * max(0, len(self._lists) - 1)
        if context is not None and context.ordered:
            context.index += 1
            marker = f"{context.index}. "
        else:
            marker = "- "
        self._begin_content()
        self._write(indent + marker)
        self._after_marker = True

    def _on_text(self, data: str) -> None:
        if self._skip_depth:
            return

        if self._preserve_depth:
            frame = self._innermost_pre()
            if frame is not None and frame.strip_leading_newline:
                frame.strip_leading_newline = False
                if data.startswith("\n"):
                    data = data[1:]
            if not data:
                return
            self._begin_content()
            self._write_verbatim(data)
            return

        collapsed = _WHITESPACE_RE.sub(" ", data)
        content = collapsed.strip(" ")
        if not content:
            if collapsed:
                self._pending_space = True
            return

        if collapsed.startswith(" "):
            self._pending_space = True
        self._begin_content()
        self._write(content)
        self._pending_space = collapsed.endswith(" ")

    def _innermost_pre(self) -> Optional[Frame]:
        for frame in reversed(self._frames):
            if frame.tag == "pre":
                return frame
        return None

    def _on_close(self, tag: str) -> None:
        if tag in VOID_TAGS:
            return
        for index in range(len(self._frames) - 1, -1, -1):
            if self._frames[index].tag == tag:
                break
        else:
            # Unmatched close tag
            return
        while len(self._frames) > index:
            self._pop_frame()

    def _pop_frame(self) -> None:
        frame = self._frames.pop()

        if frame.skip:
            self._skip_depth -= 1
            return

        if frame.preserve_whitespace:
            self._preserve_depth -= 1

        if frame.anchor_href is not None:
            self._open_spans -= 1
            if frame.anchor_text_start is None:
                self._awaiting_content -= 1
            self._close_anchor(frame)

        if frame.closing_marker is not None:
            self._open_spans -= 1
            if frame.marker_written:
                self._write(frame.closing_marker)
            else:
                self._awaiting_content -= 1

        tag = frame.tag
        if tag in ("ul", "ol"):
            if self._lists:
                self._lists.pop()
            self._request_break(1 if self._lists else 2)
        elif tag == "li":
            self._request_break(1)
        elif tag == "pre":
            self._pre_depth -= 1
            if not self._at_line_start:
                self._write("\n")
            self._begin_content()
            self._write("```")
            self._request_break(2)
        elif frame.is_blockquote:
            self._quote_depth -= 1
            self._request_break(2)
        elif frame.is_block:
            self._request_break(2)
        elif tag in CELL_TAGS:
            self._pending_space = True

    def _close_anchor(self, frame: Frame) -> None:
        if frame.anchor_text_start is None:
            # Nothing was written inside the link
            return

        inner = self._buffer[frame.anchor_text_start:]
        text = inner.strip()
        self._buffer = self._buffer[: frame.anchor_text_start]
        self._last_char, self._at_line_start, self._trailing_newlines = frame.anchor_text_state

        if not text:
            return
        self._write(f"[{_escape_link_text(text)}]({_escape_href(frame.anchor_href)})")
        if inner != inner.rstrip():
            self._pending_space = True


class HtmlEventParser(HTMLParser):
    """Feeds ``HtmlEvent`` objects to a sink as HTML text arrives"""

    def __init__(self, sink: Callable[[HtmlEvent], None]):
        super().__init__(convert_charrefs=True)
        self._sink = sink

    def handle_starttag(self, tag, attrs):
        self._sink(HtmlEvent.open(tag, dict(attrs)))

    def handle_endtag(self, tag):
        self._sink(HtmlEvent.close(tag))

    def handle_data(self, data):
        self._sink(HtmlEvent.text(data))


def render_markdown(pieces: Iterable[str], chunk_size: int = STREAM_CHUNK_SIZE) -> List[str]:
    """Convert HTML given as successive pieces; returns the Markdown chunks"""
    formatter = MarkdownFormatter(chunk_size=chunk_size)
    parser = HtmlEventParser(formatter.step)
    chunks: List[str] = []
    for piece in pieces:
        parser.feed(piece)
        chunks.extend(formatter.drain())
    parser.close()
    formatter.finish()
    chunks.extend(formatter.drain())
    return chunks


async def html_to_markdown_stream(
    source: AsyncIterable[str],
    chunk_size: int = STREAM_CHUNK_SIZE,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[str]:
    """
    Convert an HTML text stream to Markdown chunks.

    Raises:
        FetchCancelledError: when ``cancel`` fires; no further chunk is yielded
        ExtractError: when the HTML cannot be processed
        FetchError: failures raised by ``source`` pass through unchanged
    """
    formatter = MarkdownFormatter(chunk_size=chunk_size, cancel=cancel)
    parser = HtmlEventParser(formatter.step)

    def check_cancelled() -> None:
        if formatter.check_cancelled():
            raise FetchCancelledError("Markdown streaming aborted")

    completed = False
    try:
        async for piece in source:
            check_cancelled()
            parser.feed(piece)
            check_cancelled()
            for chunk in formatter.drain():
                check_cancelled()
                yield chunk

        parser.close()
        formatter.finish()
        check_cancelled()
        for chunk in formatter.drain():
            check_cancelled()
            yield chunk
        completed = True
    except (FetchError, ExtractError):
        raise
    except Exception as e:
        formatter.fail()
        logger.warning(f"Markdown conversion failed: {e}")
        raise ExtractError("Failed to convert HTML stream to Markdown") from e
    finally:
        if not completed:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()


async def html_to_markdown_string(
    source: AsyncIterable[str],
    chunk_size: int = STREAM_CHUNK_SIZE,
    cancel: Optional[CancellationToken] = None,
) -> str:
    """Buffering variant of :func:`html_to_markdown_stream`"""
    chunks = []
    async for chunk in html_to_markdown_stream(source, chunk_size=chunk_size, cancel=cancel):
        chunks.append(chunk)
    return "".join(chunks)
