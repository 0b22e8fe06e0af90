"""
BSDIFF40 patch applier.

Rebuilds a new file from an old file and a bsdiff patch. The patch is a
32-byte header followed by three bzip2 streams (control, diff, extra).
Each control triple ``(diff_count, extra_count, old_skip)`` adds
``diff_count`` residual bytes to the old file, appends ``extra_count``
literal bytes and then moves the old cursor by ``old_skip``.

Two resource strategies share one reconstruction loop:

* ``patch_less_memory`` seeks in the old file and streams the output,
  flushing after every control triple.
* ``patch_fast`` keeps old file, patch and output in memory and only
  hands the output back once the loop has finished.
"""

import hashlib
import os
from dataclasses import dataclass

from bsutil import (
    HEADER_SIZE,
    BlockReader,
    offtin,
    open_segment,
    read_fully,
    read_stream,
)

MAGIC = b"BSDIFF40"

# Result codes for input checks done before the patch is parsed
RESULT_SUCCESS = 1
RESULT_DIFF_FILE_ERR = 2
RESULT_OLD_FILE_ERR = 3
RESULT_NEW_FILE_ERR = 4

# Error reasons
HEADER_TOO_SHORT = "header_too_short"
BAD_MAGIC = "bad_magic"
NEGATIVE_LENGTH = "negative_length"
CONTROL_UNDERRUN = "control_underrun"
DIFF_UNDERRUN = "diff_underrun"
EXTRA_UNDERRUN = "extra_underrun"
OLD_FILE_UNDERRUN = "old_file_underrun"
OVERRUN = "overrun"
NEGATIVE_COUNT = "negative_count"
STREAM_CORRUPT = "stream_corrupt"
HASH_MISMATCH = "hash_mismatch"


class PatchError(Exception):
    """Base class for patch failures. ``reason`` names the failure kind."""

    def __init__(self, reason, message=None):
        super().__init__(message or reason)
        self.reason = reason


class FormatError(PatchError):
    """Header is unusable; raised before reconstruction starts."""


class CorruptPatchError(PatchError):
    """Patch data is inconsistent; raised mid-reconstruction."""


class VerifyError(PatchError):
    """Output does not match the expected hash."""


def _log(enabled, *args):
    if enabled:
        print("[bspatch]", *args)


# ------------------------------------------------------------
# Header


@dataclass(frozen=True)
class PatchHeader:
    ctrl_len: int
    diff_len: int
    new_size: int

    @property
    def ctrl_offset(self):
        return HEADER_SIZE

    @property
    def diff_offset(self):
        return HEADER_SIZE + self.ctrl_len

    @property
    def extra_offset(self):
        return HEADER_SIZE + self.ctrl_len + self.diff_len


def read_header(payload) -> PatchHeader:
    """
    Parse and validate the 32-byte header of *payload*.

    Raises:
        FormatError: payload too short, bad magic or a negative length
    """
    if len(payload) < HEADER_SIZE:
        raise FormatError(
            HEADER_TOO_SHORT, "Header too short: {} bytes".format(len(payload))
        )
    if bytes(payload[:8]) != MAGIC:
        raise FormatError(BAD_MAGIC, "Invalid header signature")
    ctrl_len = offtin(payload, 8)
    diff_len = offtin(payload, 16)
    new_size = offtin(payload, 24)
    if ctrl_len < 0 or diff_len < 0 or new_size < 0:
        raise FormatError(
            NEGATIVE_LENGTH,
            "Invalid header lengths: ctrl={} diff={} new={}".format(
                ctrl_len, diff_len, new_size),
        )
    return PatchHeader(ctrl_len, diff_len, new_size)


def open_streams(payload, header):
    """Return block readers for the control, diff and extra segments."""
    ctrl = BlockReader(
        open_segment(payload, header.ctrl_offset, header.ctrl_len),
        CorruptPatchError, STREAM_CORRUPT)
    diff = BlockReader(
        open_segment(payload, header.diff_offset, header.diff_len),
        CorruptPatchError, STREAM_CORRUPT)
    extra = BlockReader(
        open_segment(payload, header.extra_offset),
        CorruptPatchError, STREAM_CORRUPT)
    return ctrl, diff, extra


# ------------------------------------------------------------
# Old byte sources and output sinks


class FileOldSource:
    """Old file accessed through a seekable handle."""

    def __init__(self, f, size):
        self.f = f
        self.size = size

    def read(self, pos, count):
        self.f.seek(pos)
        return read_fully(self.f, count)


class BufferOldSource:
    """Old file held in memory."""

    def __init__(self, data):
        self.data = data
        self.size = len(data)

    def read(self, pos, count):
        return self.data[pos:pos + count]


class StreamSink:
    """Append-only writer that flushes after every control triple."""

    def __init__(self, out):
        self.out = out
        self.written = 0
        self.hash = hashlib.sha256()

    def write(self, data):
        if not data:
            return
        self.out.write(data)
        self.hash.update(data)
        self.written += len(data)

    def flush(self):
        self.out.flush()

    def hexdigest(self):
        return self.hash.hexdigest()


class BufferSink:
    """In-memory output, grown strictly in order as blocks arrive."""

    def __init__(self):
        self.buf = bytearray()
        self.written = 0

    def write(self, data):
        self.buf.extend(data)
        self.written += len(data)

    def flush(self):
        pass

    def getvalue(self):
        return bytes(self.buf)


# ------------------------------------------------------------
# Reconstruction


def _add_old(block, old, old_pos, comment_zero_offset=None):
    """Add old bytes onto the diff *block* in place, mod 256.

    Only positions inside ``[0, old.size)`` are combined; the rest keep
    the diff byte unchanged.
    """
    count = len(block)
    lo = max(old_pos, 0)
    hi = min(old_pos + count, old.size)
    if hi <= lo:
        return
    want = hi - lo
    old_bytes = old.read(lo, want)
    if len(old_bytes) < want:
        raise CorruptPatchError(
            OLD_FILE_UNDERRUN,
            "Old file returned {} of {} bytes at {}".format(len(old_bytes), want, lo),
        )
    z = comment_zero_offset
    if z is not None and old_pos <= z < old_pos + count:
        old_bytes = bytearray(old_bytes)
        for p in (z, z + 1):
            if lo <= p < hi and p < old_pos + count:
                old_bytes[p - lo] = 0
    start = lo - old_pos
    block[start:start + want] = bytes(
        (d + o) & 0xFF for d, o in zip(block[start:start + want], old_bytes)
    )


def _read_ctrl(ctrl):
    return offtin(ctrl.read_exact(8, CONTROL_UNDERRUN))


def reconstruct(old, ctrl, diff, extra, new_size, sink,
                comment_zero_offset=None, debug=False):
    """
    Replay control triples until exactly *new_size* bytes are written.

    Args:
        old: old byte source with ``size`` and ``read(pos, count)``
        ctrl, diff, extra: ``BlockReader`` over the three segments
        new_size: declared output size from the header
        sink: output sink with ``write`` and ``flush``
        comment_zero_offset: absolute old offset whose two bytes are
            treated as zero during addition (optional)
        debug: print every triple

    Returns:
        Number of bytes written

    Raises:
        CorruptPatchError: on any underrun, overrun or negative count
    """
    old_pos = 0
    new_pos = 0
    while new_pos < new_size:
        diff_count = _read_ctrl(ctrl)
        extra_count = _read_ctrl(ctrl)
        old_skip = _read_ctrl(ctrl)
        _log(debug, "ctrl", diff_count, extra_count, old_skip, "at", new_pos)

        if diff_count < 0 or extra_count < 0:
            raise CorruptPatchError(
                NEGATIVE_COUNT,
                "Negative count in control triple: ({}, {})".format(diff_count, extra_count),
            )

        if new_pos + diff_count > new_size:
            raise CorruptPatchError(
                OVERRUN, "Diff block overruns output at {}".format(new_pos))
        block = bytearray(diff.read_exact(diff_count, DIFF_UNDERRUN))
        _add_old(block, old, old_pos, comment_zero_offset)
        sink.write(block)
        new_pos += diff_count
        old_pos += diff_count

        if new_pos + extra_count > new_size:
            raise CorruptPatchError(
                OVERRUN, "Extra block overruns output at {}".format(new_pos))
        sink.write(extra.read_exact(extra_count, EXTRA_UNDERRUN))
        sink.flush()
        new_pos += extra_count
        old_pos += old_skip
    return new_pos


def patch_less_memory(old_file, old_size, patch_data, out,
                      comment_zero_offset=None, debug=False):
    """
    Apply *patch_data* streaming the result into *out*.

    Memory is the patch plus one control triple's blocks. *old_file* must
    be seekable. Output is written as it is produced, so on failure the
    caller owns discarding what reached *out*.

    Returns:
        Number of bytes written
    """
    sink = StreamSink(out)
    _patch_to_sink(FileOldSource(old_file, old_size), patch_data, sink,
                   comment_zero_offset, debug)
    return sink.written


def _patch_to_sink(old, patch_data, sink, comment_zero_offset, debug):
    header = read_header(patch_data)
    _log(debug, "header", header)
    ctrl, diff, extra = open_streams(patch_data, header)
    with ctrl, diff, extra:
        return reconstruct(old, ctrl, diff, extra, header.new_size, sink,
                           comment_zero_offset, debug)


def patch_fast(old_data, patch_data, comment_zero_offset=None, debug=False):
    """
    Apply *patch_data* to *old_data* fully in memory.

    Memory is old + patch + new. Returns the new file's bytes.
    """
    sink = BufferSink()
    _patch_to_sink(BufferOldSource(old_data), patch_data, sink,
                   comment_zero_offset, debug)
    return sink.getvalue()


def patch_fast_streams(old_stream, patch_stream):
    """Drain both streams and apply the patch in memory."""
    old_data = read_stream(old_stream)
    patch_data = read_stream(patch_stream)
    return patch_fast(old_data, patch_data)


# ------------------------------------------------------------
# File level entry point


def _load_patch(patch):
    if isinstance(patch, (bytes, bytearray, memoryview)):
        return bytes(patch)
    if not patch or not os.path.isfile(patch):
        return None
    with open(patch, "rb") as f:
        return f.read()


def _remove(path):
    try:
        os.remove(path)
    except OSError:
        pass


def _fsync(f):
    f.flush()
    if hasattr(os, "fsync"):
        os.fsync(f.fileno())


def apply_patch(old_path, new_path, patch, ext_len=0, zero_comment=False,
                fast=False, expected_hash=None, log=False, debug=False):
    """
    Apply a patch from *old_path* to *new_path*.

    Args:
        old_path: path to the old file
        new_path: destination for the rebuilt file; may be *old_path*
        patch: patch bytes, or a path to the patch file
        ext_len: length of trailing data after the comment length field
        zero_comment: zero the two bytes at ``old_size - ext_len - 2``
            before adding diff bytes
        fast: use the in-memory variant instead of streaming
        expected_hash: hex SHA-256 the output must match (optional)
        log: print progress
        debug: print every control triple

    Returns:
        ``RESULT_SUCCESS`` or one of the input error codes

    Raises:
        FormatError, CorruptPatchError: patch is bad
        VerifyError: output hash mismatch

    On any error *new_path* is left as it was.
        OSError: I/O failure while reading or writing
    """
    if not old_path or not os.path.isfile(old_path) or os.path.getsize(old_path) <= 0:
        _log(log, "old file missing or empty:", old_path)
        return RESULT_OLD_FILE_ERR
    if not new_path or os.path.isdir(new_path):
        _log(log, "bad new file path:", new_path)
        return RESULT_NEW_FILE_ERR
    parent = os.path.dirname(os.path.abspath(new_path))
    if not os.path.isdir(parent):
        _log(log, "new file directory missing:", parent)
        return RESULT_NEW_FILE_ERR
    patch_data = _load_patch(patch)
    if not patch_data:
        _log(log, "patch missing or empty")
        return RESULT_DIFF_FILE_ERR

    old_size = os.path.getsize(old_path)
    zero_offset = None
    if zero_comment:
        zero_offset = old_size - ext_len - 2
        if zero_offset <= 2:
            _log(log, "old file too small for comment offset:", zero_offset)
            return RESULT_OLD_FILE_ERR

    header = read_header(patch_data)
    _log(log, "patching {} -> {} ({} mode), new size {}".format(
        old_path, new_path, "fast" if fast else "streaming", header.new_size))

    # Output goes to a sibling temp file so new_path may be old_path itself
    tmp = os.fspath(new_path) + ".tmp"
    try:
        out = open(tmp, "wb")
    except OSError:
        _log(log, "cannot create", tmp)
        return RESULT_NEW_FILE_ERR
    try:
        with out:
            if fast:
                size, digest = _apply_fast(old_path, out, patch_data, zero_offset, debug)
            else:
                size, digest = _apply_streaming(old_path, out, patch_data, old_size,
                                                zero_offset, debug)
            _fsync(out)
        if expected_hash and digest != expected_hash.lower():
            raise VerifyError(
                HASH_MISMATCH,
                "Output hash mismatch: expected {}, got {}".format(expected_hash, digest),
            )
        os.replace(tmp, new_path)
    except (PatchError, OSError):
        _remove(tmp)
        raise
    _log(log, "wrote {} bytes, sha256 {}".format(size, digest))
    return RESULT_SUCCESS


def _apply_streaming(old_path, out, patch_data, old_size, zero_offset, debug):
    sink = StreamSink(out)
    with open(old_path, "rb") as old_file:
        _patch_to_sink(FileOldSource(old_file, old_size), patch_data, sink,
                       zero_offset, debug)
    return sink.written, sink.hexdigest()


def _apply_fast(old_path, out, patch_data, zero_offset, debug):
    with open(old_path, "rb") as f:
        old_data = f.read()
    new_data = patch_fast(old_data, patch_data, zero_offset, debug)
    out.write(new_data)
    return len(new_data), hashlib.sha256(new_data).hexdigest()
