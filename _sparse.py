"""
Sparse compression, a run-length scheme for sectors with long runs of zeros.

The stream starts with the decompressed size as a big endian 32 bit integer,
followed by chunks. A chunk byte with the high bit set is followed by
``(byte & 0x7F) + 1`` literal bytes, otherwise it stands for
``(byte & 0x7F) + 3`` zeros.
"""
import struct

_MAX_LITERALS = 0x80
_MIN_ZEROS = 3
_MAX_ZEROS = 0x7F + _MIN_ZEROS


def compress(data: bytes) -> bytes:
    result = bytearray(struct.pack('>I', len(data)))
    i = 0

    while i < len(data):
        run = i
        while run < len(data) and data[run] == 0 and run - i < _MAX_ZEROS:
            run += 1

        if run - i >= _MIN_ZEROS:
            result.append(run - i - _MIN_ZEROS)
            i = run
            continue

        start = i
        while i < len(data) and i - start < _MAX_LITERALS:
            if data[i:i + _MIN_ZEROS] == bytes(_MIN_ZEROS):
                break
            i += 1

        result.append(0x80 | (i - start - 1))
        result += data[start:i]

    return bytes(result)


def decompress(data: bytes) -> bytes:
    if len(data) < 4:
        raise ValueError("Sparse stream is too short to hold its size.")

    remaining, = struct.unpack_from('>I', data)
    result = bytearray()
    position = 4

    while position < len(data) and remaining:
        chunk = data[position]
        position += 1

        if chunk & 0x80:
            size = min((chunk & 0x7F) + 1, remaining)
            literals = data[position:position + size]
            if len(literals) != size:
                raise ValueError("Sparse stream ends inside a literal chunk.")
            result += literals
            position += size
        else:
            size = min((chunk & 0x7F) + _MIN_ZEROS, remaining)
            result += bytes(size)

        remaining -= size

    return bytes(result)
