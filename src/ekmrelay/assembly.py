"""Chunk accumulation for the two halves of a meter reading.

The gateway cannot relay a whole 255-byte meter message in one radio
packet.  It first answers with a chunk envelope declaring the chunk
size and count, then returns one chunk per chunk request.  The final
chunk carries a one-byte trailer (two hex characters) that is not part
of the meter message.

Example:
    >>> buf = ChunkBuffer()
    >>> buf.begin_envelope(MessageHalf.A, chunk_size=128, num_chunks=2)
    >>> buf.append_chunk("0211")
    False
    >>> buf.append_chunk("2233FF")
    True
    >>> buf.message(MessageHalf.A)
    '02112233'
"""

from ekmrelay.protocol import MessageHalf

# Hex characters dropped from the end of the final chunk.
TRAILER_CHARS = 2


class ChunkBuffer:
    """Ordered chunk payloads for message A and message B of one cycle."""

    def __init__(self):
        self._chunks: dict[MessageHalf, list[str]] = {
            MessageHalf.A: [],
            MessageHalf.B: [],
        }
        self._half = MessageHalf.A
        self.chunk_size = 0
        self.num_chunks = 0
        self.cursor = 0

    @property
    def half(self) -> MessageHalf:
        return self._half

    def reset(self) -> None:
        """Clear both halves."""
        self._chunks[MessageHalf.A].clear()
        self._chunks[MessageHalf.B].clear()

    def begin_envelope(self, half: MessageHalf, chunk_size: int, num_chunks: int) -> None:
        """Start collecting *half*.

        A fresh message A always means a fresh cycle, so both halves
        are cleared; message B keeps the validated A chunks.

        Raises:
            ValueError: If *num_chunks* is not positive.
        """
        if num_chunks < 1:
            raise ValueError("num_chunks must be >= 1, got %d" % num_chunks)
        if half is MessageHalf.A:
            self.reset()
        self._half = half
        self.chunk_size = chunk_size
        self.num_chunks = num_chunks
        self.cursor = 0

    def is_last(self) -> bool:
        return self.cursor == self.num_chunks - 1

    def append_chunk(self, data: str) -> bool:
        """Append the chunk at the cursor.

        Returns True when this was the final chunk (trailer removed,
        message complete), False when another chunk must be requested.
        The cursor only advances on non-final chunks.
        """
        if self.is_last():
            self._chunks[self._half].append(data[:-TRAILER_CHARS])
            return True
        self._chunks[self._half].append(data)
        self.cursor += 1
        return False

    def chunks(self, half: MessageHalf) -> list[str]:
        return list(self._chunks[half])

    def message(self, half: MessageHalf) -> str:
        """Return the concatenated payload collected for *half*."""
        return "".join(self._chunks[half])
