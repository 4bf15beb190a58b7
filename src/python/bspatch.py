#!/usr/bin/env python3
"""
Binary Patch Application (BSDIFF40)

Reconstructs a new file from an old file and a BSDIFF40 patch, the format
written by Colin Percival's bsdiff:

  - a 32-byte header: magic, compressed control length, compressed diff
    length, size of the new file
  - three independently bzip2-compressed streams: control, diff, extra

The control stream is a flat sequence of (add, copy, seek) triples.  For
each triple, `add` bytes of the diff stream are added bytewise to the old
file, `copy` bytes of the extra stream are appended verbatim, and the old
file cursor moves by `seek` (which may be negative).

Usage:
  python bspatch.py apply <old> <patch> <new>
  python bspatch.py info  <patch>
"""

import argparse
import bz2
import mmap
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple


# ============================================================================
# Errors
# ============================================================================

class PatchError(Exception):
    """Base class for every failure while applying a patch."""


class PatchIOError(PatchError):
    """A file could not be opened, read or written."""


class PatchTimeout(PatchIOError):
    """The deadline passed before reconstruction finished.

    Nothing is written in that case, so the call can simply be retried.
    """


class PatchMemoryError(PatchError):
    """The output buffer could not be allocated."""


class HeaderError(PatchError):
    """Structural problem in the 32-byte header."""


class MalformedHeader(HeaderError):
    pass


class BadMagic(HeaderError):
    pass


class BadLength(HeaderError):
    pass


class CorruptPatch(PatchError):
    """Control, bounds or decompression failure past the header."""


ERROR_MESSAGE_MAX = 63


def error_message(err: Exception) -> str:
    """Short human-readable form of err, at most ERROR_MESSAGE_MAX chars."""
    return str(err)[:ERROR_MESSAGE_MAX]


# ============================================================================
# Sign-Magnitude Offsets
#
# Every header field and every control field is 8 bytes: a little-endian
# magnitude with the sign in the top bit of the last byte.
#
#   byte:   0    1    2    3    4    5    6    7
#          [----------- magnitude ------------|S]
#
# The default profile accepts 31-bit magnitudes, which caps lengths and
# positions at 2 GB - 1.  WIDE_OFFSET_BITS admits the full 63 bits.
# ============================================================================

BSDIFF_MAGIC = b'BSDIFF40'
HEADER_SIZE = 32
OFFSET_SIZE = 8
CONTROL_SIZE = 3 * OFFSET_SIZE
OFFSET_BITS = 31
WIDE_OFFSET_BITS = 63
CHUNK_SIZE = 1 << 16     # compressed bytes handed to the decoder per call

_SIGN_BIT = 1 << 63


def _check_width(bits: int) -> None:
    if not 0 < bits <= WIDE_OFFSET_BITS:
        raise ValueError(f"offset width must be 1..{WIDE_OFFSET_BITS}, got {bits}")


def decode_offset(buf, bits: int = OFFSET_BITS) -> int:
    """Decode the sign-magnitude field in the first 8 bytes of buf.

    Raises ValueError if the magnitude has any bit set at or above `bits`.
    """
    _check_width(bits)
    if len(buf) < OFFSET_SIZE:
        raise ValueError(f"offset needs {OFFSET_SIZE} bytes, got {len(buf)}")
    raw = int.from_bytes(buf[:OFFSET_SIZE], 'little')
    magnitude = raw & (_SIGN_BIT - 1)
    if magnitude >> bits:
        raise ValueError(f"magnitude exceeds {bits} bits")
    return -magnitude if raw & _SIGN_BIT else magnitude


# ============================================================================
# Container Header
#
#   offset  length  field
#   0       8       "BSDIFF40"
#   8       8       X = compressed control length
#   16      8       Y = compressed diff length
#   24      8       size of the new file
#   32      X       bzip2(control)
#   32+X    Y       bzip2(diff)
#   32+X+Y  ...     bzip2(extra), to the end of the container
# ============================================================================

@dataclass
class PatchHeader:
    """Decoded header plus the size of the container it was read from."""
    control_len: int
    diff_len: int
    new_size: int
    container_size: int

    @property
    def control_offset(self) -> int:
        return HEADER_SIZE

    @property
    def diff_offset(self) -> int:
        return HEADER_SIZE + self.control_len

    @property
    def extra_offset(self) -> int:
        return HEADER_SIZE + self.control_len + self.diff_len


_HEADER_FIELDS = (
    ('control length', 8),
    ('diff length', 16),
    ('new size', 24),
)


def is_bsdiff_patch(data) -> bool:
    """Check only the magic tag of data."""
    return len(data) >= len(BSDIFF_MAGIC) and data[:len(BSDIFF_MAGIC)] == BSDIFF_MAGIC


def parse_header(patch, bits: int = OFFSET_BITS) -> PatchHeader:
    """Parse and validate the 32-byte header of a patch container.

    Stream offsets are not checked against the container size here; a
    stream that starts past the end fails when it is opened.
    """
    _check_width(bits)
    if len(patch) < HEADER_SIZE:
        raise MalformedHeader(f"Invalid patchFile: header is {len(patch)} bytes")
    if not is_bsdiff_patch(patch):
        raise BadMagic("Invalid patchFile: bad magic")

    fields = []
    for name, pos in _HEADER_FIELDS:
        try:
            value = decode_offset(patch[pos:pos + OFFSET_SIZE], bits)
        except ValueError as err:
            raise BadLength(f"Invalid patchFile: {name}: {err}") from err
        if value < 0:
            raise BadLength(f"Invalid patchFile: negative {name}")
        fields.append(value)

    control_len, diff_len, new_size = fields
    return PatchHeader(control_len=control_len, diff_len=diff_len,
                       new_size=new_size, container_size=len(patch))


# ============================================================================
# Decompression Cursors
#
# The three streams were compressed independently and are decoded
# independently; each cursor owns its own bzip2 decoder and its own read
# position inside the container.
# ============================================================================

class StreamCursor:
    """Pull exact-length reads out of one bzip2 stream in the container."""

    def __init__(self, container, start: int, end: int, name: str,
                 chunk_size: int = CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        if start > len(container):
            raise CorruptPatch(f"Invalid patchFile: {name} stream past end")
        self.name = name
        self.consumed = 0
        self._src = container
        self._pos = start
        self._end = min(end, len(container))
        self._chunk = chunk_size
        self._dec = bz2.BZ2Decompressor()

    def read(self, n: int) -> bytes:
        """Return exactly n decompressed bytes or raise CorruptPatch.

        A clean end of stream before n bytes counts as corruption too.
        """
        if n == 0:
            return b''
        out = bytearray()
        try:
            while len(out) < n and not self._dec.eof:
                data = b''
                if self._dec.needs_input and self._pos < self._end:
                    data = self._src[self._pos:min(self._pos + self._chunk, self._end)]
                    self._pos += len(data)
                chunk = self._dec.decompress(data, n - len(out))
                if not chunk and not data and self._pos >= self._end:
                    break
                out += chunk
        except (OSError, EOFError, ValueError) as err:
            raise CorruptPatch(f"Invalid patchFile: {self.name} stream: {err}") from err
        if len(out) != n:
            raise CorruptPatch(f"Invalid patchFile: {self.name} stream truncated")
        self.consumed += n
        return bytes(out)


def _open_streams(patch, header: PatchHeader, chunk_size: int):
    """Open the control, diff and extra cursors, in that order."""
    control = StreamCursor(patch, header.control_offset, header.diff_offset,
                           'control', chunk_size)
    diff = StreamCursor(patch, header.diff_offset, header.extra_offset,
                        'diff', chunk_size)
    extra = StreamCursor(patch, header.extra_offset, len(patch),
                         'extra', chunk_size)
    return control, diff, extra


# ============================================================================
# Control Triples
# ============================================================================

@dataclass
class ControlTriple:
    """One step of the edit script."""
    add_len: int
    copy_len: int
    seek: int

    def __repr__(self):
        return f"CTRL(add={self.add_len}, copy={self.copy_len}, seek={self.seek})"


@dataclass
class PatchOptions:
    """Options for patch application."""
    bits: int = OFFSET_BITS
    chunk_size: int = CHUNK_SIZE
    timeout: Optional[float] = None     # seconds; None waits forever
    verbose: bool = False

    def __post_init__(self):
        _check_width(self.bits)
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")


def _read_triple(control: StreamCursor, bits: int) -> ControlTriple:
    raw = control.read(CONTROL_SIZE)
    try:
        add_len, copy_len, seek = (decode_offset(raw[i:i + OFFSET_SIZE], bits)
                                   for i in range(0, CONTROL_SIZE, OFFSET_SIZE))
    except ValueError as err:
        raise CorruptPatch(f"Invalid patchFile: control: {err}") from err
    if add_len < 0 or copy_len < 0:
        raise CorruptPatch("Invalid patchFile: negative control length")
    return ControlTriple(add_len, copy_len, seek)


def _control_triples(control: StreamCursor, new_size: int, bits: int,
                     deadline: Optional[float] = None) -> Iterator[ControlTriple]:
    """Yield triples until they cover new_size bytes of output.

    Every triple is checked against the declared size before it is
    yielded, so a consumer never writes past new_size.
    """
    new_pos = 0
    while new_pos < new_size:
        if deadline is not None and time.monotonic() >= deadline:
            raise PatchTimeout(f"Timed out at byte {new_pos} of {new_size}")
        triple = _read_triple(control, bits)
        if new_pos + triple.add_len > new_size:
            raise CorruptPatch("Invalid patchFile: add overruns new size")
        new_pos += triple.add_len
        if new_pos + triple.copy_len > new_size:
            raise CorruptPatch("Invalid patchFile: copy overruns new size")
        new_pos += triple.copy_len
        yield triple


def iter_control(patch, header: Optional[PatchHeader] = None,
                 opts: Optional[PatchOptions] = None) -> Iterator[ControlTriple]:
    """Decode the control stream alone, without the diff or extra streams.

    The old file is not consulted, so only the lower bound of the old
    cursor is checked.
    """
    opts = opts or PatchOptions()
    if header is None:
        header = parse_header(patch, opts.bits)
    control = StreamCursor(patch, header.control_offset, header.diff_offset,
                           'control', opts.chunk_size)
    old_pos = 0
    for triple in _control_triples(control, header.new_size, opts.bits):
        old_pos += triple.add_len + triple.seek
        if old_pos < 0:
            raise CorruptPatch("Invalid patchFile: seek before old start")
        yield triple


def patch_summary(patch, opts: Optional[PatchOptions] = None) -> dict:
    """Return summary statistics for the control stream of a patch."""
    opts = opts or PatchOptions()
    header = parse_header(patch, opts.bits)
    triples = list(iter_control(patch, header, opts))
    add_bytes = sum(t.add_len for t in triples)
    copy_bytes = sum(t.copy_len for t in triples)
    return {
        'num_triples': len(triples),
        'add_bytes': add_bytes,
        'copy_bytes': copy_bytes,
        'backward_seeks': sum(1 for t in triples if t.seek < 0),
        'total_output_bytes': add_bytes + copy_bytes,
    }


# ============================================================================
# Reconstruction
# ============================================================================

def _add_bytes(diff: bytes, old) -> bytes:
    """Bytewise (diff + old) mod 256 over len(old); the rest of diff as is."""
    mixed = bytes((d + o) & 0xFF for d, o in zip(diff, old))
    return mixed + diff[len(old):]


def apply_patch_to(old, patch, buf, header: Optional[PatchHeader] = None,
                   opts: Optional[PatchOptions] = None, streams=None) -> int:
    """Reconstruct the new file into buf (at least new_size bytes).

    streams, if given, are unread control, diff and extra cursors from
    _open_streams over the same patch.

    Returns bytes written, which is always header.new_size.
    """
    opts = opts or PatchOptions()
    if header is None:
        header = parse_header(patch, opts.bits)
    new_size = header.new_size
    old_size = len(old)
    if len(buf) < new_size:
        raise ValueError(f"output buffer holds {len(buf)} bytes, need {new_size}")

    if opts.verbose:
        print(f"bspatch: control={header.control_len:,} diff={header.diff_len:,} "
              f"extra={header.container_size - header.extra_offset:,} compressed, "
              f"|old|={old_size:,}, |new|={new_size:,}",
              file=sys.stderr)

    deadline = None
    if opts.timeout is not None:
        deadline = time.monotonic() + opts.timeout

    if streams is None:
        streams = _open_streams(patch, header, opts.chunk_size)
    control, diff, extra = streams
    old_pos = new_pos = 0
    num_triples = 0

    for triple in _control_triples(control, new_size, opts.bits, deadline):
        num_triples += 1

        # Add: diff bytes plus old bytes; positions past the old end keep
        # the raw diff byte.
        n = triple.add_len
        data = diff.read(n)
        avail = min(n, old_size - old_pos)
        if avail > 0:
            data = _add_bytes(data, old[old_pos:old_pos + avail])
        buf[new_pos:new_pos + n] = data
        new_pos += n
        old_pos += n

        # Copy: extra bytes verbatim.
        n = triple.copy_len
        buf[new_pos:new_pos + n] = extra.read(n)
        new_pos += n

        old_pos += triple.seek
        if old_pos < 0 or old_pos > old_size:
            raise CorruptPatch("Invalid patchFile: seek outside old file")

    if opts.verbose:
        print(f"  result: {num_triples} triples, {diff.consumed:,} add bytes, "
              f"{extra.consumed:,} copy bytes",
              file=sys.stderr)
    return new_pos


def apply_patch(old, patch, opts: Optional[PatchOptions] = None) -> bytes:
    """Reconstruct the new file from old + patch, entirely in memory."""
    opts = opts or PatchOptions()
    header = parse_header(patch, opts.bits)
    try:
        buf = bytearray(header.new_size)
    except MemoryError as err:
        raise PatchMemoryError("Out of memory") from err
    apply_patch_to(old, patch, buf, header, opts)
    return bytes(buf)


# ============================================================================
# Memory-mapped file I/O
# ============================================================================

@contextmanager
def mmap_open(path, what: str = 'file'):
    """Memory-map a file for reading.  Yields b'' for empty files."""
    try:
        f = open(path, 'rb')
    except OSError as err:
        raise PatchIOError(f"Can't open {what}") from err
    with f:
        try:
            size = os.fstat(f.fileno()).st_size
            mm = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) if size else None
        except (OSError, ValueError) as err:
            raise PatchIOError(f"Failed to read {what}") from err
        if mm is None:
            yield b""
            return
        try:
            yield mm
        finally:
            mm.close()


def _discard(path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


@contextmanager
def mmap_create(path, size):
    """Create `path` holding exactly `size` bytes, all or nothing.

    Yields a writable buffer backed by a temporary file beside `path`.  The
    temporary replaces `path` only when the block exits cleanly; on any
    error it is removed and `path` is left as it was.
    """
    tmp = f"{path}.{os.getpid()}.tmp"
    try:
        f = open(tmp, 'w+b')
    except OSError as err:
        raise PatchIOError("Can't open newFile") from err
    try:
        with f:
            if size == 0:
                yield bytearray()
            else:
                try:
                    f.truncate(size)
                    mm = mmap.mmap(f.fileno(), size)
                except OSError as err:
                    raise PatchIOError("Failed to write newFile") from err
                try:
                    yield mm
                    mm.flush()
                finally:
                    mm.close()
        os.replace(tmp, path)
    except OSError as err:
        _discard(tmp)
        raise PatchIOError("Failed to write newFile") from err
    except BaseException:
        _discard(tmp)
        raise


# ============================================================================
# File-level operation
# ============================================================================

def patch_file(old_path, patch_path, new_path,
               opts: Optional[PatchOptions] = None) -> PatchHeader:
    """Apply the patch at patch_path to old_path, writing new_path.

    new_path appears only once the whole output has been rebuilt.
    """
    opts = opts or PatchOptions()
    with mmap_open(patch_path, 'patchFile') as patch:
        header = parse_header(patch, opts.bits)
        streams = _open_streams(patch, header, opts.chunk_size)
        with mmap_open(old_path, 'oldFile') as old:
            with mmap_create(new_path, header.new_size) as buf:
                apply_patch_to(old, patch, buf, header, opts, streams)
    return header


def bspatch(old_path, patch_path, new_path,
            opts: Optional[PatchOptions] = None) -> Tuple[bool, str]:
    """Apply a patch between files; returns (ok, short error message)."""
    try:
        patch_file(old_path, patch_path, new_path, opts)
    except PatchError as err:
        return False, error_message(err)
    return True, ''


# ============================================================================
# CLI
# ============================================================================

def _options(args) -> PatchOptions:
    return PatchOptions(
        bits=WIDE_OFFSET_BITS if args.wide else OFFSET_BITS,
        timeout=getattr(args, 'timeout', None),
        verbose=getattr(args, 'verbose', False),
    )


def cmd_apply(args):
    if args.timeout is not None and args.timeout < 0:
        raise SystemExit("error: --timeout must be >= 0")
    t0 = time.time()
    try:
        header = patch_file(args.old, args.patch, args.new, _options(args))
    except PatchError as err:
        raise SystemExit(f"error: PatchFile failed! {error_message(err)}")
    elapsed = time.time() - t0

    print(f"Old:          {args.old} ({os.path.getsize(args.old):,} bytes)")
    print(f"Patch:        {args.patch} ({header.container_size:,} bytes)")
    print(f"New:          {args.new} ({header.new_size:,} bytes)")
    print(f"Time:         {elapsed:.3f}s")
    print("PatchFile OK")


def cmd_info(args):
    opts = _options(args)
    try:
        with mmap_open(args.patch, 'patchFile') as patch:
            header = parse_header(patch, opts.bits)
            stats = patch_summary(patch, opts)
    except PatchError as err:
        raise SystemExit(f"error: {error_message(err)}")

    print(f"Patch file:   {args.patch} ({header.container_size:,} bytes)")
    print(f"New size:     {header.new_size:,} bytes")
    print(f"Control:      {header.control_len:,} bytes at {header.control_offset}")
    print(f"Diff:         {header.diff_len:,} bytes at {header.diff_offset}")
    print(f"Extra:        {header.container_size - header.extra_offset:,} bytes "
          f"at {header.extra_offset}")
    print(f"Triples:      {stats['num_triples']} "
          f"({stats['backward_seeks']} backward seeks)")
    print(f"  Add:        {stats['add_bytes']:,} bytes")
    print(f"  Copy:       {stats['copy_bytes']:,} bytes")


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Apply a BSDIFF40 binary patch')
    sub = ap.add_subparsers(dest='command')

    # apply
    app = sub.add_parser('apply', help='Rebuild a new file from old file + patch')
    app.add_argument('old', help='Old (reference) file')
    app.add_argument('patch', help='BSDIFF40 patch file')
    app.add_argument('new', help='Output (new) file')
    app.add_argument('--wide', action='store_true',
                     help='Accept 63-bit offsets (default: 31-bit)')
    app.add_argument('--timeout', type=float, default=None, metavar='SECONDS',
                     help='Abort if reconstruction takes longer than this')
    app.add_argument('--verbose', action='store_true',
                     help='Print diagnostic messages to stderr')
    app.set_defaults(func=cmd_apply)

    # info
    inf = sub.add_parser('info', help='Show patch header and control statistics')
    inf.add_argument('patch', help='BSDIFF40 patch file')
    inf.add_argument('--wide', action='store_true',
                     help='Accept 63-bit offsets (default: 31-bit)')
    inf.set_defaults(func=cmd_info)

    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
