"""
Message Stream Decoder
======================
Turns the Docker daemon's newline-delimited JSON progress stream into
``ContainerEvent`` objects.

Record mapping (exactly one event per non-blank line):
    {"error": ...} / {"errorDetail": {"message": ...}}   -> Error
    {"aux": {"ID": ...}}                                 -> Metadata(image_id)
    {"aux": {"Tag": ..., "Digest": ..., "Size": ...}}    -> Metadata(tag, digest, size)
    anything else                                        -> Progress
    malformed JSON                                       -> Error (decoding continues)
    end of input                                         -> EndOfSubStream

SESSIONS:
    An ``EventSession`` fans in one producer thread per sub-stream (one per
    pushed tag, for example) over a single queue. The session is drained once
    ``expected_end_of_stream`` end markers have been consumed. Producers never
    raise across the queue; read failures arrive as ``Error`` events followed
    by the sub-stream's end marker.

    Consumers either pull (``next()`` / iteration) or push (``subscribe``).
    There is no cancel token: a caller that stops consuming simply discards
    the session.
"""
import codecs
import json
import logging
import queue
import threading
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from buildbox.core.errors import StreamError
from buildbox.models.events import ContainerEvent, EndOfSubStream, Error, Metadata, Progress

logger = logging.getLogger(__name__)

EventCallback = Callable[[ContainerEvent], None]
Chunk = Union[bytes, str]


# ---------------------------------------------------------------------------
# Record decoding
# ---------------------------------------------------------------------------
def summarize(record: dict[str, Any]) -> str:
    """Human readable text for a progress record (build output or pull/push status)."""
    stream_text = record.get("stream")
    if stream_text:
        return str(stream_text)

    parts = []
    if record.get("id"):
        parts.append(f"{record['id']}:")
    if record.get("status"):
        parts.append(str(record["status"]))
    if record.get("progress"):
        parts.append(str(record["progress"]))
    return " ".join(parts) + "\n" if parts else ""


def _error_message(record: dict[str, Any]) -> str:
    if record.get("error"):
        return str(record["error"])
    detail = record.get("errorDetail") or record.get("ErrorDetail")
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    return ""


def decode_record(line: str, stream: str = "") -> ContainerEvent:
    """Decode one JSON line into exactly one event."""
    try:
        record = json.loads(line)
    except ValueError as e:
        err = StreamError(f"malformed daemon record: {e}", stream=stream, line=line)
        return Error(stream=stream, message=str(err), cause=err)

    if not isinstance(record, dict):
        err = StreamError("daemon record is not a JSON object", stream=stream, line=line)
        return Error(stream=stream, message=str(err), cause=err)

    message = _error_message(record)
    if message:
        return Error(stream=stream, message=message, cause=StreamError(message, stream=stream, line=line))

    aux = record.get("aux")
    if isinstance(aux, dict):
        if aux.get("ID"):
            return Metadata(stream=stream, image_id=str(aux["ID"]))
        if aux.get("Tag") and aux.get("Digest"):
            return Metadata(
                stream=stream,
                tag=str(aux["Tag"]),
                digest=str(aux["Digest"]),
                size=int(aux.get("Size") or 0),
            )

    return Progress(stream=stream, message=summarize(record), record=record)


def decode_stream(chunks: Iterable[Chunk], stream: str = "") -> Iterator[ContainerEvent]:
    """
    Decode a chunked byte stream into events.

    Chunks may split records anywhere (including inside a multi-byte UTF-8
    sequence); lines are reassembled before decoding. A trailing record
    without a newline is still decoded. Always ends with one EndOfSubStream.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    try:
        for chunk in chunks:
            buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                if line.strip():
                    yield decode_record(line, stream)
        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            yield decode_record(buffer, stream)
    except Exception as e:  # surfaced as an event; the consumer must still see the end marker
        logger.warning("Daemon stream read failed | stream=%s | error=%s", stream, e)
        err = StreamError(f"reading daemon stream: {e}", stream=stream)
        yield Error(stream=stream, message=str(err), cause=e)
    yield EndOfSubStream(stream=stream)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
class EventSession:
    """
    Owned decoding session returned by build, push and pull operations.

    Usage:
        session = EventSession(expected_end_of_stream=2)
        session.feed(push_stream_a, stream="repo:a")
        session.feed(push_stream_b, stream="repo:b")
        for event in session:
            ...
        if session.errors:
            ...
    """

    def __init__(
        self,
        expected_end_of_stream: int = 1,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        if expected_end_of_stream < 1:
            raise ValueError("expected_end_of_stream must be at least 1")
        self.expected_end_of_stream = expected_end_of_stream
        self.errors: list[Error] = []
        self._on_event = on_event
        self._queue: "queue.Queue[ContainerEvent]" = queue.Queue()
        self._ends_seen = 0
        self._producers: list[threading.Thread] = []

    # -- producer side -----------------------------------------------------
    def feed(self, chunks: Iterable[Chunk], stream: str = "") -> threading.Thread:
        """Start a producer thread decoding ``chunks`` as one sub-stream."""
        thread = threading.Thread(
            target=self._produce,
            args=(chunks, stream),
            name=f"buildbox-stream-{len(self._producers)}",
            daemon=True,
        )
        self._producers.append(thread)
        thread.start()
        return thread

    def fail(self, error: BaseException, stream: str = "") -> None:
        """End a sub-stream that could not be started: one Error event, then its end marker."""
        self._queue.put(Error(stream=stream, message=str(error), cause=error))
        self._queue.put(EndOfSubStream(stream=stream))

    def _produce(self, chunks: Iterable[Chunk], stream: str) -> None:
        for event in decode_stream(chunks, stream):
            failure = None
            # The hook runs on the producer thread so results are recorded
            # even when nobody consumes the session.
            if self._on_event is not None and not isinstance(event, EndOfSubStream):
                try:
                    self._on_event(event)
                except Exception as e:
                    logger.warning("Event handler failed | stream=%s | error=%s", stream, e)
                    failure = Error(stream=stream, message=f"handling event: {e}", cause=e)
            self._queue.put(event)
            if failure is not None:
                self._queue.put(failure)

    # -- consumer side -----------------------------------------------------
    @property
    def drained(self) -> bool:
        return self._ends_seen >= self.expected_end_of_stream

    def next(self) -> Optional[ContainerEvent]:
        """Block for the next event; ``None`` once every sub-stream has ended."""
        if self.drained:
            return None
        event = self._queue.get()
        if isinstance(event, EndOfSubStream):
            self._ends_seen += 1
        elif isinstance(event, Error):
            self.errors.append(event)
        return event

    def __iter__(self) -> Iterator[ContainerEvent]:
        while True:
            event = self.next()
            if event is None:
                return
            yield event

    def subscribe(self, callback: EventCallback, fail_on_error: bool = False) -> list[Error]:
        """
        Invoke ``callback`` for every event until the session is drained.

        Parameters
        ----------
        callback : callable
            Receives each event, end markers included.
        fail_on_error : bool
            Raise ``StreamError`` at the first Error event (after the callback
            saw it) instead of draining the remaining sub-streams.

        Returns
        -------
        list[Error]
            Every Error event seen.
        """
        for event in self:
            callback(event)
            if fail_on_error and isinstance(event, Error):
                raise StreamError(event.message, stream=event.stream) from event.cause
        return list(self.errors)

    def wait(self) -> list[Error]:
        """Drain the session without a listener."""
        return self.subscribe(lambda _event: None)
