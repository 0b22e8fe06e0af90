"""
Low level helpers for BSDIFF40 patches.

Integer codec for the patch's signed-magnitude offsets, bzip2 segment
readers and a few stream utilities shared by the patch engine.
"""

import bz2
import io

# Length of the patch header
HEADER_SIZE = 32
BUFFER_SIZE = 8192


def to_unsigned(value):
    """Reinterpret a signed 8-bit value as unsigned."""
    return value & 0xFF


def to_signed(value):
    """Reinterpret an unsigned 8-bit value as signed."""
    value &= 0xFF
    return value if value < 128 else value - 256


def offtin(buf, offset=0):
    """
    Decode the 8-byte signed-magnitude integer at *offset*.

    Bytes 0-6 and the low 7 bits of byte 7 hold the magnitude,
    little-endian, with byte 7 as the most significant digit. Bit 7 of
    byte 7 is the sign. This is not two's complement.
    """
    top = buf[offset + 7]
    y = top & 0x7F
    for i in range(6, -1, -1):
        y = y * 256 + to_unsigned(buf[offset + i])
    if top & 0x80:
        y = -y
    return y


def read_fully(stream, count):
    """Read up to *count* bytes, looping over short reads. Stops at EOF."""
    chunks = []
    remaining = count
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


def read_stream(stream, chunk_size=BUFFER_SIZE):
    """Drain *stream* into a single bytes object."""
    out = bytearray()
    while True:
        data = stream.read(chunk_size)
        if not data:
            break
        out.extend(data)
    return bytes(out)


class BlockReader:
    """
    Forward-only reader over one decompressed patch segment.

    Wraps a bzip2 stream and hands out exact-length blocks. A short or
    truncated read raises ``error_cls(reason)``; undecodable data raises
    ``error_cls(corrupt_reason)``.
    """

    def __init__(self, stream, error_cls, corrupt_reason):
        self.stream = stream
        self.error_cls = error_cls
        self.corrupt_reason = corrupt_reason
        self.offset = 0

    def read_exact(self, count, reason):
        """Read exactly *count* bytes or raise ``error_cls(reason)``."""
        if count == 0:
            return b""
        try:
            data = read_fully(self.stream, count)
        except EOFError as exc:
            # bzip2 stream cut short
            raise self.error_cls(
                reason, "segment truncated at offset {}: {}".format(self.offset, exc)
            ) from exc
        except (OSError, ValueError) as exc:
            raise self.error_cls(
                self.corrupt_reason, "segment failed to decompress: {}".format(exc)
            ) from exc
        self.offset += len(data)
        if len(data) < count:
            raise self.error_cls(
                reason, "wanted {} bytes at segment offset {}, got {}".format(
                    count, self.offset - len(data), len(data))
            )
        return data

    def close(self):
        self.stream.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def open_segment(payload, offset, length=None):
    """
    Open a bzip2 decompressor over ``payload[offset:offset+length]``.

    ``length=None`` reads to the end of the payload. Returns a binary
    file object supporting forward reads; ``read`` returns ``b""`` at
    end of data.
    """
    if length is None:
        length = max(len(payload) - offset, 0)
    view = memoryview(payload)[offset:offset + length]
    if not len(view):
        return io.BytesIO(b"")
    return bz2.BZ2File(io.BytesIO(view), "rb")
