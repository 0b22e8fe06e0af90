"""Round trip against patches produced by a real bsdiff implementation."""

import io
import random

import pytest

from bspatch import RESULT_SUCCESS, apply_patch, patch_fast, patch_less_memory

bsdiff4 = pytest.importorskip("bsdiff4")


@pytest.fixture
def versions():
    rng = random.Random(1234)
    old = b"".join(b"Block %04d: " % i + b"X" * 100 + b"\n" for i in range(50))
    new = bytearray(old[:3000])
    new += b"".join(b"Modified %04d: " % i + b"Y" * 90 + b"\n" for i in range(10))
    new += bytes(rng.randrange(256) for _ in range(500))
    new += old[1000:2500]
    return old, bytes(new)


def test_fast_round_trip(versions):
    old, new = versions
    patch = bsdiff4.diff(old, new)
    assert patch[:8] == b"BSDIFF40"
    assert patch_fast(old, patch) == new


def test_streaming_round_trip(versions):
    old, new = versions
    patch = bsdiff4.diff(old, new)
    out = io.BytesIO()
    patch_less_memory(io.BytesIO(old), len(old), patch, out)
    assert out.getvalue() == new


def test_matches_bsdiff4_patch(versions):
    old, new = versions
    patch = bsdiff4.diff(old, new)
    assert patch_fast(old, patch) == bsdiff4.patch(old, patch)


@pytest.mark.parametrize("fast", [False, True])
def test_file_round_trip(tmp_path, versions, fast):
    old, new = versions
    old_path = tmp_path / "app-1.0.bin"
    old_path.write_bytes(old)
    patch_path = tmp_path / "app.patch"
    patch_path.write_bytes(bsdiff4.diff(old, new))
    out = tmp_path / "app-1.1.bin"
    assert apply_patch(str(old_path), str(out), str(patch_path), fast=fast) == RESULT_SUCCESS
    assert out.read_bytes() == new
