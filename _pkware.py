"""
PKWare Data Compression Library "implode" format.

Bits are consumed least significant first. Huffman codes are canonical,
stored with every bit inverted and read most significant bit first. The
three code tables are fixed and given in a compact form: each byte holds a
code length in its low nibble and a repeat count minus one in its high
nibble.

`explode` reads both literal modes (raw bytes and Huffman coded) and all
three dictionary sizes. `implode` writes raw literals and greedy
back-references of three bytes or more.
"""
import typing

BINARY = 0
ASCII = 1

_MAX_BITS = 13
_END_OF_STREAM = 519
_MAX_MATCH = _END_OF_STREAM - 1
_MIN_MATCH = 3

_literal_lengths = bytes((
    11, 124, 8, 7, 28, 7, 188, 13, 76, 4, 10, 8, 12, 10, 12, 10, 8, 23, 8,
    9, 7, 6, 7, 8, 7, 6, 55, 8, 23, 24, 12, 11, 7, 9, 11, 12, 6, 7, 22, 5,
    7, 24, 6, 11, 9, 6, 7, 22, 7, 11, 38, 7, 9, 8, 25, 11, 8, 11, 9, 12,
    8, 12, 5, 38, 5, 38, 5, 11, 7, 5, 6, 21, 6, 10, 53, 8, 7, 24, 10, 27,
    44, 253, 253, 253, 252, 252, 252, 13, 12, 45, 12, 45, 12, 61, 12, 45,
    44, 173,
))
_length_lengths = bytes((2, 35, 36, 53, 38, 23))
_distance_lengths = bytes((2, 20, 53, 230, 247, 151, 248))

_length_base = (3, 2, 4, 5, 6, 7, 8, 9, 10, 12, 16, 24, 40, 72, 136, 264)
_length_extra = (0, 0, 0, 0, 0, 0, 0, 0, 1, 2, 3, 4, 5, 6, 7, 8)


class _Huffman:
    count: typing.List[int]
    symbols: typing.List[int]
    codes: typing.Dict[int, typing.Tuple[int, int]]

    def __init__(self, compact: bytes):
        lengths = []
        for byte in compact:
            lengths.extend([byte & 0x0F] * ((byte >> 4) + 1))

        self.count = [0] * (_MAX_BITS + 1)
        for length in lengths:
            self.count[length] += 1

        offsets = [0] * (_MAX_BITS + 2)
        for length in range(1, _MAX_BITS + 1):
            offsets[length + 1] = offsets[length] + self.count[length]

        self.symbols = [0] * len(lengths)
        for symbol, length in enumerate(lengths):
            self.symbols[offsets[length]] = symbol
            offsets[length] += 1

        self.codes = {}
        first = index = 0
        for length in range(1, _MAX_BITS + 1):
            for code in range(first, first + self.count[length]):
                self.codes[self.symbols[index]] = code, length
                index += 1
            first = (first + self.count[length]) << 1


_literal_table = _Huffman(_literal_lengths)
_length_table = _Huffman(_length_lengths)
_distance_table = _Huffman(_distance_lengths)


class _BitReader:
    def __init__(self, data: bytes):
        self.data = data
        self.position = 0
        self.buffer = 0
        self.available = 0

    def bits(self, needed: int) -> int:
        while self.available < needed:
            if self.position >= len(self.data):
                raise ValueError("PKWare stream ends before its end marker.")
            self.buffer |= self.data[self.position] << self.available
            self.position += 1
            self.available += 8

        value = self.buffer & ((1 << needed) - 1)
        self.buffer >>= needed
        self.available -= needed
        return value

    def decode(self, table: _Huffman) -> int:
        code = first = index = 0
        for length in range(1, _MAX_BITS + 1):
            code |= self.bits(1) ^ 1
            count = table.count[length]
            if code < first + count:
                return table.symbols[index + code - first]
            index += count
            first = (first + count) << 1
            code <<= 1
        raise ValueError("Invalid PKWare Huffman code.")


class _BitWriter:
    def __init__(self):
        self.result = bytearray()
        self.buffer = 0
        self.used = 0

    def write(self, value: int, bits: int):
        self.buffer |= value << self.used
        self.used += bits
        while self.used >= 8:
            self.result.append(self.buffer & 0xFF)
            self.buffer >>= 8
            self.used -= 8

    def write_code(self, table: _Huffman, symbol: int):
        code, length = table.codes[symbol]
        for shift in reversed(range(length)):
            self.write(((code >> shift) & 1) ^ 1, 1)

    def write_length(self, length: int):
        for symbol, (base, extra) in enumerate(zip(_length_base, _length_extra)):
            if base <= length < base + (1 << extra):
                self.write_code(_length_table, symbol)
                self.write(length - base, extra)
                return
        raise ValueError(f"Match length {length} cannot be encoded.")

    def getvalue(self) -> bytes:
        if self.used:
            return bytes(self.result + bytes((self.buffer & 0xFF,)))
        return bytes(self.result)


def explode(data: bytes) -> bytes:
    """Decompress an imploded stream."""
    reader = _BitReader(data)

    literal_mode = reader.bits(8)
    if literal_mode not in (BINARY, ASCII):
        raise ValueError(f"Unknown PKWare literal mode {literal_mode}.")

    dictionary_bits = reader.bits(8)
    if not 4 <= dictionary_bits <= 6:
        raise ValueError(f"Unknown PKWare dictionary size {dictionary_bits}.")

    result = bytearray()
    while True:
        if not reader.bits(1):
            if literal_mode == ASCII:
                result.append(reader.decode(_literal_table))
            else:
                result.append(reader.bits(8))
            continue

        symbol = reader.decode(_length_table)
        length = _length_base[symbol] + reader.bits(_length_extra[symbol])
        if length == _END_OF_STREAM:
            break

        low_bits = 2 if length == 2 else dictionary_bits
        distance = (reader.decode(_distance_table) << low_bits) + reader.bits(low_bits) + 1
        if distance > len(result):
            raise ValueError("PKWare back-reference points before the stream start.")

        for _ in range(length):
            result.append(result[-distance])

    return bytes(result)


def implode(data: bytes, dictionary_bits: int = 6) -> bytes:
    """Compress ``data`` with raw literals and a 1, 2 or 4 KiB window."""
    if not 4 <= dictionary_bits <= 6:
        raise ValueError(f"Unknown PKWare dictionary size {dictionary_bits}.")

    window = 64 << dictionary_bits
    writer = _BitWriter()
    writer.write(BINARY, 8)
    writer.write(dictionary_bits, 8)

    last_seen: typing.Dict[bytes, int] = {}
    i = 0

    while i < len(data):
        length = 0
        candidate = last_seen.get(data[i:i + _MIN_MATCH])

        if candidate is not None and i - candidate <= window:
            limit = min(len(data) - i, _MAX_MATCH)
            while length < limit and data[candidate + length] == data[i + length]:
                length += 1

        if length >= _MIN_MATCH:
            distance = i - candidate - 1
            writer.write(1, 1)
            writer.write_length(length)
            writer.write_code(_distance_table, distance >> dictionary_bits)
            writer.write(distance & ((1 << dictionary_bits) - 1), dictionary_bits)
        else:
            length = 1
            writer.write(0, 1)
            writer.write(data[i], 8)

        for position in range(i, i + length):
            if position + _MIN_MATCH <= len(data):
                last_seen[data[position:position + _MIN_MATCH]] = position
        i += length

    writer.write(1, 1)
    writer.write_length(_END_OF_STREAM)
    return writer.getvalue()
