import struct
import typing
import io
import enum
import mmap
import pathlib
import dataclasses
import hashlib
import threading
import zlib
import bz2
import lzma
import re
import itertools
import logging
import functools

import _adpcm
import _huffman
import _pkware
import _sparse

__version__ = "0.1.0"

listfile_name = b'(listfile)'
attributes_name = b'(attributes)'
signature_name = b'(signature)'

_HashType = typing.NewType('_HashType', int)
"Hashed version of a string, that MPQ can work with."
_FilePosition = typing.NewType('_FilePosition', int)
"An offset from the start of the MPQ header."
HashTableEntries = typing.NewType('HashTableEntries', int)
"A number that is a power of 2."
FilePath = typing.NewType('FilePath', bytes)
r"""
A full qualified path that is a valid windows path, for example `Foo\\Bar\\file.txt`.
Such a path is used as an entry key to extract a file from a MPQ.
For multi-OS compatibility, only backslashes have been observed as directory separators
and every implementation capitalizes the letters of the path to
allow unpacking on case insensitive file systems.
"""

_MPQ_USER_DATA_MAGIC = b"MPQ\x1B"
_MPQ_HEADER_MAGIC = b"MPQ\x1A"

_MASK_32 = 0xFFFFFFFF
_MASK_48 = 0x0000FFFFFFFFFFFF

COMPRESSION_NONE = 0x00
COMPRESSION_HUFFMAN = 0x01
COMPRESSION_ZLIB = 0x02
COMPRESSION_PKWARE = 0x08
COMPRESSION_BZIP2 = 0x10
COMPRESSION_SPARSE = 0x20
COMPRESSION_ADPCM_MONO = 0x40
COMPRESSION_ADPCM_STEREO = 0x80
COMPRESSION_LZMA = 0x12


class MPQError(Exception):
    """Base class of every error raised while reading or writing an archive."""


class BadSignature(MPQError, TypeError):
    pass


class UnsupportedFormat(MPQError, NotImplementedError):
    pass


class TruncatedHeader(MPQError):
    pass


class TruncatedTable(MPQError):
    pass


class CorruptTable(MPQError):
    pass


class NotFound(MPQError, LookupError):
    pass


class BlockOutOfRange(MPQError, IndexError):
    pass


class DeletedBlock(MPQError):
    pass


class CorruptSector(MPQError):
    """A sector did not decode to exactly the size the block table promises."""


class DecryptionError(CorruptSector):
    pass


class UnsupportedCompression(CorruptSector):
    pass


class DuplicateEntry(MPQError, ValueError):
    pass


class HashTableFull(MPQError):
    pass


class MPQFormat(enum.IntEnum):
    BASIC = 0
    EXTENDED_V1 = 1
    EXTENDED_V2 = 2
    EXTENDED_V3 = 3


@functools.lru_cache(maxsize=None)
def _closest_power_of_two(x) -> HashTableEntries:
    return HashTableEntries(max(4, 1 << (x - 1).bit_length()))


def _is_power_of_two(x: int) -> bool:
    return x > 0 and x & (x - 1) == 0


def _pairwise(iterable):  # from python manual
    """s -> (s0,s1), (s1,s2), (s2, s3), ..."""
    a, b = itertools.tee(iterable)
    next(b, None)
    return zip(a, b)


def _as_path(name: typing.Union[str, bytes]) -> FilePath:
    if isinstance(name, str):
        name = name.encode('utf-8')
    return FilePath(bytes(name))


def _fold(path: bytes) -> bytes:
    """Names that differ only by case or separator address the same entry."""
    return path.upper().replace(b'/', b'\\')


def _base_name(path: bytes) -> bytes:
    """The file name without its folders, used to derive the encryption key."""
    return path.replace(b'/', b'\\').rsplit(b'\\', 1)[-1]


# Crypt table, hashing and the block cipher.

_hash_types = {
    'TABLE_OFFSET': 0,
    'HASH_A': 1,
    'HASH_B': 2,
    'TABLE': 3
}


@functools.lru_cache(maxsize=None)
def crypt_table() -> typing.Tuple[int, ...]:
    """The 0x500 values every MPQ hash and key is derived from."""
    logging.info("Creating the crypt table")

    table = [0] * 0x500
    seed = 0x00100001

    for i in range(256):
        index = i
        for _ in range(5):
            seed = (seed * 125 + 3) % 0x2AAAAB
            temp1 = (seed & 0xFFFF) << 16

            seed = (seed * 125 + 3) % 0x2AAAAB
            temp2 = (seed & 0xFFFF)

            table[index] = (temp1 | temp2)

            index += 256

    return tuple(table)


@functools.lru_cache(maxsize=None)
def _hash(string: bytes, hash_type: str) -> _HashType:
    """Hash a string using MPQ's hash function."""
    table = crypt_table()
    seed1 = 0x7FED7FED
    seed2 = 0xEEEEEEEE
    offset = _hash_types[hash_type] << 8

    # only ascii letters are folded, and both separators hash the same
    for ch in _fold(string):
        value = table[offset + ch]
        seed1 = (value ^ (seed1 + seed2)) & _MASK_32
        seed2 = (ch + seed1 + seed2 + (seed2 << 5) + 3) & _MASK_32

    return _HashType(seed1)


def hash_string(name: typing.Union[str, bytes], hash_type: str) -> int:
    return _hash(_as_path(name), hash_type)


@functools.lru_cache(maxsize=None)
def filename_to_hash_pair(filename: bytes) -> typing.Tuple[_HashType, _HashType]:
    return _hash(filename, 'HASH_A'), _hash(filename, 'HASH_B')


def _decrypt(data: bytes, key: int) -> bytes:
    """Decrypt hash or block table or a sector.

    Trailing bytes that do not fill a whole 32 bit word are left as they are."""
    table = crypt_table()
    key &= _MASK_32
    words = len(data) // 4
    seed = 0xEEEEEEEE
    result = []

    for value in struct.unpack_from('<%dI' % words, data):
        seed = (seed + table[0x400 + (key & 0xFF)]) & _MASK_32
        value = (value ^ (key + seed)) & _MASK_32

        key = ((~key << 0x15) + 0x11111111) | (key >> 0x0B)
        key &= _MASK_32
        seed = (value + seed + (seed << 5) + 3) & _MASK_32

        result.append(value)

    return struct.pack('<%dI' % words, *result) + bytes(data[words * 4:])


def _encrypt(data: bytes, key: int) -> bytes:
    table = crypt_table()
    key &= _MASK_32
    words = len(data) // 4
    seed = 0xEEEEEEEE
    result = []

    for value in struct.unpack_from('<%dI' % words, data):
        seed = (seed + table[0x400 + (key & 0xFF)]) & _MASK_32
        result.append((value ^ (key + seed)) & _MASK_32)

        key = ((~key << 0x15) + 0x11111111) | (key >> 0x0B)
        key &= _MASK_32
        seed = (value + seed + (seed << 5) + 3) & _MASK_32

    return struct.pack('<%dI' % words, *result) + bytes(data[words * 4:])


def index_for_path(path: bytes, hash_table_entries: HashTableEntries):
    """Returns the default index for a given path"""
    return _hash(path, 'TABLE_OFFSET') & (hash_table_entries - 1)


# Compression.

def _lzma_compress(data: bytes) -> bytes:
    # leading byte is the filter id, only "no filter" exists in the wild
    return b'\x00' + lzma.compress(data, format=lzma.FORMAT_ALONE)


def _lzma_decompress(data: bytes) -> bytes:
    if not data or data[0] != 0:
        raise ValueError("LZMA sector uses an unknown filter.")
    return lzma.decompress(data[1:], format=lzma.FORMAT_ALONE)


# In decompression order; compression walks it backwards.
_decompressors: typing.Dict[int, typing.Tuple[str, typing.Callable[[bytes], bytes]]] = {
    COMPRESSION_BZIP2: ("bzip2", bz2.decompress),
    COMPRESSION_PKWARE: ("pkware", _pkware.explode),
    COMPRESSION_ZLIB: ("zlib", zlib.decompress),
    COMPRESSION_HUFFMAN: ("huffman", _huffman.decompress),
    COMPRESSION_ADPCM_STEREO: ("stereowav", functools.partial(_adpcm.decompress, channels=2)),
    COMPRESSION_ADPCM_MONO: ("monowav", _adpcm.decompress),
    COMPRESSION_SPARSE: ("sparse", _sparse.decompress),
}

_compressors: typing.Dict[int, typing.Callable[[bytes], bytes]] = {
    COMPRESSION_BZIP2: bz2.compress,
    COMPRESSION_PKWARE: _pkware.implode,
    COMPRESSION_ZLIB: zlib.compress,
    COMPRESSION_HUFFMAN: _huffman.compress,
    COMPRESSION_ADPCM_STEREO: functools.partial(_adpcm.compress, channels=2),
    COMPRESSION_ADPCM_MONO: _adpcm.compress,
    COMPRESSION_SPARSE: _sparse.compress,
}


def _uncompress(query: int) -> list:
    """Decompressors for a compression mask byte, in the order to apply them."""
    if query == COMPRESSION_LZMA:
        return [("lzma", _lzma_decompress)]

    ret = []
    for mask, (short, meth) in _decompressors.items():
        if query & mask:
            ret.append((short, meth))
            query ^= mask
    if query != 0:
        raise UnsupportedCompression(f"Unsupported compression {bin(query)}")
    return ret


def compress(data: bytes, query: int) -> bytes:
    """Apply every method of a compression mask. The mask byte is not prepended."""
    if query == COMPRESSION_LZMA:
        return _lzma_compress(data)

    unknown = query & ~sum(_compressors)
    if unknown:
        raise UnsupportedCompression(f"Unsupported compression {bin(unknown)}")

    for mask in reversed(list(_compressors)):
        if query & mask:
            data = _compressors[mask](data)
    return data


def decompress(data: bytes) -> bytes:
    """Undo a compressed sector, reading the leading compression mask byte."""
    if not data:
        raise CorruptSector("Compressed sector is empty.")
    return _run_decompressors(data[0], data[1:])


def _run_decompressors(query: int, data: bytes) -> bytes:
    for short, method in _uncompress(query):
        try:
            data = method(data)
        except NotImplementedError as e:
            raise UnsupportedCompression(f"{short}: {e}") from e
        except (zlib.error, lzma.LZMAError, OSError, ValueError, EOFError, struct.error) as e:
            logging.exception(f"Error when decompressing a chunk with method {short}")
            raise CorruptSector(f"{short} decompression failed: {e}") from e
    return data


def compress_sector(
        data: bytes, query: int, *, imploded: bool = False
) -> bytes:
    """Bytes to store for one sector.

    Falls back to the raw sector when compressing does not save at least a byte,
    which is how readers know not to decompress it."""
    if imploded:
        packed = _pkware.implode(data)
    elif query:
        try:
            packed = bytes((query,)) + compress(data, query)
        except ValueError as e:
            # lossy wave codecs refuse partial samples
            logging.warning("Storing sector uncompressed: %s", e)
            return bytes(data)
    else:
        return bytes(data)

    return packed if len(packed) < len(data) else bytes(data)


def decompress_sector(
        data: bytes, expected_size: int, *, imploded: bool = False, compressed: bool = True
) -> bytes:
    """Inverse of `compress_sector`, enforcing the exact decompressed size."""
    if len(data) == expected_size:
        return bytes(data)

    if len(data) > expected_size:
        raise CorruptSector(
            f"Sector holds {len(data)} bytes, more than the {expected_size} expected."
        )

    if imploded:
        try:
            result = _pkware.explode(data)
        except ValueError as e:
            logging.exception("Error when exploding a chunk")
            raise CorruptSector(f"pkware decompression failed: {e}") from e
    elif compressed:
        if not data:
            raise CorruptSector("Compressed sector is empty.")
        result = _run_decompressors(data[0], data[1:])
    else:
        raise CorruptSector(
            f"Sector of an uncompressed file holds {len(data)} bytes, "
            f"expected {expected_size}."
        )

    if len(result) != expected_size:
        raise CorruptSector(
            f"Sector decompressed to {len(result)} bytes, expected {expected_size}."
        )
    return result


# Binary records.

class _FormattedTuple:
    format_string: typing.ClassVar[str]

    @classmethod
    def __init_subclass__(cls, format_string=None, **kwargs):
        if format_string is not None:
            cls.format_string = format_string

        super().__init_subclass__(**kwargs)

    @classmethod
    def size(cls) -> int:
        return struct.calcsize(cls.format_string)

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0):
        return cls(*struct.unpack_from(cls.format_string, data, offset))

    def pack_tuple(self) -> tuple:
        return dataclasses.astuple(self)

    def pack(self) -> bytes:
        return struct.pack(self.format_string, *self.pack_tuple())


@dataclasses.dataclass()
class _MPQUserData(_FormattedTuple, format_string="<4s3I"):
    magic: bytes
    max_size: int
    offset_to_header: int
    this_size: int


def merge_high_bits(base: int, high: int) -> int:
    """A 48 bit offset from its low 32 bits and a 16 bit extension."""
    return (((high << 32) & 0x0000FFFF00000000) + (base & _MASK_32)) & _MASK_48


def split_high_bits(offset: int) -> typing.Tuple[int, int]:
    """Inverse of `merge_high_bits`."""
    return offset & _MASK_32, (offset >> 32) & 0xFFFF


@dataclasses.dataclass
class MPQHeader(_FormattedTuple, format_string="<4s2I2H4I"):
    """
    Archive header of the basic format, the one every MPQ reader understands.
    Subclasses add the fields of the later formats; the class of a parsed
    header is chosen by its format version, so fields of a newer format are
    never read from an older archive.
    """
    magic: bytes
    header_size: int
    mpq_size: int
    format_version: int
    block_size_exp: int
    hash_table_offset: int
    block_table_offset: int
    hash_table_entries: HashTableEntries
    block_table_entries: int

    version: typing.ClassVar[MPQFormat] = MPQFormat.BASIC
    entry_size: typing.ClassVar[int] = 16

    @classmethod
    def empty(cls, block_size_exp=3) -> 'MPQHeader':
        """Minimal valid header of this format, for an archive without files."""
        size = cls.size()
        return cls(
            _MPQ_HEADER_MAGIC, size, size, int(cls.version), block_size_exp,
            size, size, HashTableEntries(0), 0
        )

    @staticmethod
    def parse(data: bytes) -> 'MPQHeader':
        if data[:4] != _MPQ_HEADER_MAGIC:
            raise BadSignature(f"Expected {_MPQ_HEADER_MAGIC!r}, found {bytes(data[:4])!r}.")

        if len(data) < MPQHeader.size():
            raise TruncatedHeader(f"Only {len(data)} bytes of header available.")

        format_version, = struct.unpack_from('<H', data, 12)
        try:
            klass = _header_classes[format_version]
        except KeyError:
            raise UnsupportedFormat(f"MPQ format version {format_version} not supported.") from None

        header_size, = struct.unpack_from('<I', data, 4)
        if header_size < MPQHeader.size():
            raise TruncatedHeader(f"Header declares only {header_size} bytes.")

        stored = min(header_size, klass.size())
        if len(data) < stored:
            raise TruncatedHeader(
                f"Format {format_version} needs a {stored} byte header, "
                f"only {len(data)} available."
            )

        # fields past the stored header size were never written
        if stored < klass.size():
            logging.warning(
                "Format %d header stores %d of its %d bytes, the rest reads as zero.",
                format_version, stored, klass.size()
            )
            data = bytes(data[:stored]).ljust(klass.size(), b'\x00')

        return klass.unpack(data)

    @property
    def sector_size(self):
        return 512 << self.block_size_exp

    @property
    def hash_table_size(self) -> int:
        return self.hash_table_entries * self.entry_size

    @property
    def block_table_size(self) -> int:
        return self.block_table_entries * self.entry_size

    def get_hash_table_offset(self) -> int:
        return self.hash_table_offset

    def get_block_table_offset(self) -> int:
        return self.block_table_offset

    def set_hash_table_offset(self, offset: int):
        if offset > _MASK_32:
            raise MPQError("Hash table offset does not fit a basic format header.")
        self.hash_table_offset = offset

    def set_block_table_offset(self, offset: int):
        if offset > _MASK_32:
            raise MPQError("Block table offset does not fit a basic format header.")
        self.block_table_offset = offset

    @property
    def archive_size(self) -> int:
        return self.mpq_size

    def set_archive_size(self, size: int):
        if size > _MASK_32:
            raise MPQError("Archive does not fit a basic format header.")
        self.mpq_size = size

    def raw_table_size(self, which: str) -> int:
        if which == 'hi_block':
            return self.extended_block_table_size
        return getattr(self, f"{which}_table_size")

    def stored_table_size(self, which: str) -> int:
        """How many bytes a table occupies in the archive."""
        return self.raw_table_size(which)

    def is_table_compressed(self, which: str) -> bool:
        return False

    def is_hash_table_compressed(self) -> bool:
        return self.is_table_compressed('hash')

    def is_block_table_compressed(self) -> bool:
        return self.is_table_compressed('block')


@dataclasses.dataclass
class MPQHeaderV1(MPQHeader, format_string=MPQHeader.format_string + "QHH"):
    """Burning Crusade format, tables may live past 4 GiB."""
    extended_block_table_offset: int = 0
    hash_table_offset_high: int = 0
    block_table_offset_high: int = 0

    version: typing.ClassVar[MPQFormat] = MPQFormat.EXTENDED_V1
    extended_entry_size: typing.ClassVar[int] = 2

    def get_hash_table_offset(self) -> int:
        return merge_high_bits(self.hash_table_offset, self.hash_table_offset_high)

    def get_block_table_offset(self) -> int:
        return merge_high_bits(self.block_table_offset, self.block_table_offset_high)

    def set_hash_table_offset(self, offset: int):
        self.hash_table_offset, self.hash_table_offset_high = split_high_bits(offset)

    def set_block_table_offset(self, offset: int):
        self.block_table_offset, self.block_table_offset_high = split_high_bits(offset)

    @property
    def extended_block_table_size(self) -> int:
        return self.block_table_entries * self.extended_entry_size

    @property
    def archive_size(self) -> int:
        # No trustworthy total is stored: the archive ends with whichever table ends last.
        ends = [
            self.header_size,
            self.get_hash_table_offset() + self.hash_table_size,
            self.get_block_table_offset() + self.block_table_size,
        ]
        if self.extended_block_table_offset:
            ends.append(self.extended_block_table_offset + self.extended_block_table_size)
        return max(ends)

    def set_archive_size(self, size: int):
        self.mpq_size = size & _MASK_32


@dataclasses.dataclass
class MPQHeaderV2(MPQHeaderV1, format_string=MPQHeaderV1.format_string + "3Q"):
    archive_size_64: int = 0
    bet_table_offset: int = 0
    het_table_offset: int = 0

    version: typing.ClassVar[MPQFormat] = MPQFormat.EXTENDED_V2

    @classmethod
    def empty(cls, block_size_exp=3) -> 'MPQHeader':
        header = super().empty(block_size_exp)
        header.archive_size_64 = cls.size()
        return header

    @property
    def archive_size(self) -> int:
        return self.archive_size_64

    def set_archive_size(self, size: int):
        self.mpq_size = size & _MASK_32
        self.archive_size_64 = size


@dataclasses.dataclass
class MPQHeaderV3(MPQHeaderV2, format_string=MPQHeaderV2.format_string + "5QI16s16s16s16s16s16s"):
    """
    Cataclysm format. Tables may be stored compressed, and each table plus the
    header itself carries an MD5 digest. An all zero digest is not checked.
    """
    hash_table_size_64: int = 0
    block_table_size_64: int = 0
    hi_block_table_size_64: int = 0
    het_table_size_64: int = 0
    bet_table_size_64: int = 0
    raw_chunk_size: int = 0
    md5_block_table: bytes = bytes(16)
    md5_hash_table: bytes = bytes(16)
    md5_hi_block_table: bytes = bytes(16)
    md5_bet_table: bytes = bytes(16)
    md5_het_table: bytes = bytes(16)
    md5_header: bytes = bytes(16)

    version: typing.ClassVar[MPQFormat] = MPQFormat.EXTENDED_V3
    _compressed_size_fields: typing.ClassVar[typing.Dict[str, str]] = {
        'hash': 'hash_table_size_64',
        'block': 'block_table_size_64',
        'hi_block': 'hi_block_table_size_64',
    }

    def stored_table_size(self, which: str) -> int:
        if self.is_table_compressed(which):
            return getattr(self, self._compressed_size_fields[which])
        return self.raw_table_size(which)

    def is_table_compressed(self, which: str) -> bool:
        # A table is stored compressed when its recorded size is smaller than its raw size.
        stored = getattr(self, self._compressed_size_fields[which])
        return 0 < stored < self.raw_table_size(which)

    def header_digest(self) -> bytes:
        """MD5 of the header from the signature up to the header digest field."""
        return hashlib.md5(self.pack()[:-16]).digest()


_header_classes: typing.Dict[int, typing.Type[MPQHeader]] = {
    klass.version: klass for klass in (MPQHeader, MPQHeaderV1, MPQHeaderV2, MPQHeaderV3)
}


class SlotState(enum.Enum):
    LIVE = "live"
    DELETED = "deleted"
    NEVER_USED = "never used"


@dataclasses.dataclass
class MPQHashEntry(_FormattedTuple, format_string="<2IHHI"):
    name_part_a: int
    name_part_b: int
    locale: int
    platform: int
    block_index: int

    NEVER_USED: typing.ClassVar[int] = 0xFFFFFFFF
    DELETED: typing.ClassVar[int] = 0xFFFFFFFE

    @classmethod
    def empty(cls) -> 'MPQHashEntry':
        return cls(_MASK_32, _MASK_32, 0xFFFF, 0xFFFF, cls.NEVER_USED)

    @classmethod
    def deleted(cls) -> 'MPQHashEntry':
        return cls(_MASK_32, _MASK_32, 0, 0, cls.DELETED)

    @property
    def was_always_empty(self):
        return self.block_index == self.NEVER_USED

    @property
    def was_deleted(self):
        return self.block_index == self.DELETED

    @property
    def state(self) -> SlotState:
        if self.was_always_empty:
            return SlotState.NEVER_USED
        if self.was_deleted:
            return SlotState.DELETED
        return SlotState.LIVE

    def matches(self, hash_a: int, hash_b: int, locale: int, platform: int) -> bool:
        return (self.name_part_a, self.name_part_b, self.locale, self.platform) == \
            (hash_a, hash_b, locale, platform)


class HashTable:
    """
    Open addressed table from file names to block indices.
    Probing starts at the name's table offset hash and walks forward, wrapping
    around; a never used slot ends the walk, a deleted one does not.
    """
    entries: typing.List[MPQHashEntry]

    def __init__(self, entries: typing.List[MPQHashEntry]):
        if not _is_power_of_two(len(entries)):
            raise CorruptTable(f"Hash table size {len(entries)} is not a power of two.")
        self.entries = entries

    @classmethod
    def empty(cls, count: int) -> 'HashTable':
        if not _is_power_of_two(count):
            raise CorruptTable(f"Hash table size {count} is not a power of two.")
        return cls([MPQHashEntry.empty() for _ in range(count)])

    @classmethod
    def from_bytes(cls, data: bytes, count: int) -> 'HashTable':
        size = MPQHashEntry.size()
        return cls([MPQHashEntry.unpack(data, size * i) for i in range(count)])

    def to_bytes(self) -> bytes:
        return b''.join(entry.pack() for entry in self.entries)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def _probe(self, name: bytes) -> typing.Iterator[typing.Tuple[int, MPQHashEntry]]:
        start = index_for_path(name, HashTableEntries(len(self.entries)))
        for step in range(len(self.entries)):
            index = (start + step) & (len(self.entries) - 1)
            yield index, self.entries[index]

    def _find_index(self, name: bytes, locale: int, platform: int) -> typing.Optional[int]:
        hash_a, hash_b = filename_to_hash_pair(name)
        for index, entry in self._probe(name):
            state = entry.state
            if state is SlotState.NEVER_USED:
                return None
            if state is SlotState.LIVE and entry.matches(hash_a, hash_b, locale, platform):
                return index
        return None

    def find(self, name: bytes, locale=0, platform=0) -> typing.Optional[MPQHashEntry]:
        index = self._find_index(name, locale, platform)
        return None if index is None else self.entries[index]

    def lookup(self, name: bytes, locale=0, platform=0) -> int:
        """Block index of a name, raises `NotFound` when absent."""
        entry = self.find(name, locale, platform)
        if entry is None:
            raise NotFound(f"{name!r} (locale {locale:#x}, platform {platform}) is not in the archive.")
        return entry.block_index

    def insert(self, name: bytes, block_index: int, locale=0, platform=0) -> int:
        """Store a name in the first free slot of its probe chain, returns the slot."""
        hash_a, hash_b = filename_to_hash_pair(name)
        free = None

        for index, entry in self._probe(name):
            state = entry.state
            if state is SlotState.LIVE:
                if entry.matches(hash_a, hash_b, locale, platform):
                    raise DuplicateEntry(
                        f"{name!r} (locale {locale:#x}, platform {platform}) is already stored."
                    )
                continue
            if free is None:
                free = index
            if state is SlotState.NEVER_USED:
                break

        if free is None:
            raise HashTableFull(f"No slot left for {name!r} in a {len(self)} entry hash table.")

        self.entries[free] = MPQHashEntry(hash_a, hash_b, locale, platform, block_index)
        return free

    def remove(self, name: bytes, locale=0, platform=0) -> int:
        """Mark the slot of a name as deleted, returns the block index it held."""
        index = self._find_index(name, locale, platform)
        if index is None:
            raise NotFound(f"{name!r} (locale {locale:#x}, platform {platform}) is not in the archive.")
        block_index = self.entries[index].block_index
        self.entries[index] = MPQHashEntry.deleted()
        return block_index

    def live_entries(self) -> typing.Iterator[MPQHashEntry]:
        for h in self.entries:
            if h.state is SlotState.LIVE:
                yield h


@dataclasses.dataclass
class MPQBlockEntry(_FormattedTuple, format_string="<4I"):
    """
    A packed file with a locale and a platform.
    Size and flags tell how to uncompress the file.
    """
    file_position: _FilePosition
    compressed_size: int
    uncompressed_size: int
    flags: int

    # dummies replaced by getter/setter properties, to shut lint warnings.
    imploded: typing.ClassVar[bool]
    compressed: typing.ClassVar[bool]
    encrypted: typing.ClassVar[bool]
    fix_key: typing.ClassVar[bool]
    is_patch: typing.ClassVar[bool]
    single_sector: typing.ClassVar[bool]
    deleted: typing.ClassVar[bool]
    has_crc: typing.ClassVar[bool]
    exists: typing.ClassVar[bool]

    flags_table: typing.ClassVar[typing.Dict] = {
        0x00000100: ('imploded', "PKWare compressed file (imploded)."),
        0x00000200: ('compressed', "Sectors start with a compression mask byte."),
        0x00010000: ('encrypted', "File is encrypted from its name (without path)."),
        0x00020000: ('fix_key', "Additional layer of encryption from offset in "
                                "archive and final file size."),
        0x00100000: ('is_patch', "File is a patch."),
        0x01000000: ('single_sector', "Single block file."),
        0x02000000: ('deleted', "File is replaced by patch."),
        0x04000000: ('has_crc', "Each sector of file has CRC."),
        0x80000000: ('exists', "Block is a file and not empty space.")
    }

    def __repr__(self):
        dic = dataclasses.asdict(self)
        dic.update({'flags': bin(self.flags)})

        descriptions = ', '.join(
            desc for key, (_, desc) in self.flags_table.items() if self.flags & key
        )

        return f"{dic} - {descriptions} "

    def pack_tuple(self):
        return (
            self.file_position & _MASK_32, self.compressed_size, self.uncompressed_size, self.flags
        )

    @property
    def position_high(self) -> int:
        return (self.file_position >> 32) & 0xFFFF

    @property
    def has_sector_table(self) -> bool:
        return not self.single_sector and (self.imploded or self.compressed)

    def sector_count(self, sector_size: int) -> int:
        return -(-self.uncompressed_size // sector_size)

    def file_key(self, filename: bytes) -> int:
        key = _hash(_base_name(filename), 'TABLE')
        if self.fix_key:
            key = ((key + self.file_position) & _MASK_32) ^ self.uncompressed_size
        return key

    def sectors_positions(
        self, source: '_ByteSource', sector_size: int,
        *, decrypt_key: typing.Optional[int] = None, offset=0
    ) -> typing.List[int]:
        """Sector boundaries relative to the file start, followed by the end of the
        checksum block when the file has one."""
        if self.single_sector:
            return [0, self.compressed_size]

        sectors = self.sector_count(sector_size)

        if not self.has_sector_table:
            return [min(i * sector_size, self.uncompressed_size) for i in range(sectors + 1)]

        entries = sectors + 1 + bool(self.has_crc)
        positions_data = source.read_at(self.file_position + offset, 4 * entries)
        if len(positions_data) != 4 * entries:
            raise CorruptSector("Sector offset table runs past the end of the archive.")

        if decrypt_key is not None:
            positions_data = _decrypt(positions_data, decrypt_key)

        positions = list(struct.unpack('<%dI' % entries, positions_data))

        if positions[-1] > self.compressed_size or any(b < a for a, b in _pairwise(positions)):
            error = DecryptionError if decrypt_key is not None else CorruptSector
            raise error(f"Sector offset table is inconsistent: {positions}")

        return positions

    def extract_file(
        self, source: '_ByteSource', sector_size: int,
        filename: bytes = b'', offset=0
    ) -> bytes:
        if not self.exists or self.deleted:
            raise DeletedBlock(f"Block of {filename!r} holds no file.")

        if self.uncompressed_size == 0:
            return b''

        key = None
        if self.encrypted:
            if not filename:
                raise DecryptionError("An encrypted file can only be read by its name.")
            key = self.file_key(filename)

        positions = self.sectors_positions(
            source, sector_size,
            decrypt_key=None if key is None else (key - 1) & _MASK_32, offset=offset
        )
        sectors = 1 if self.single_sector else self.sector_count(sector_size)

        raw_bytes_to_read = source.read_at(self.file_position + offset, positions[-1])
        if len(raw_bytes_to_read) != positions[-1]:
            raise CorruptSector(f"Data of {filename!r} runs past the end of the archive.")

        checksums = None
        if self.has_crc and self.has_sector_table:
            checksums = self._sector_checksums(raw_bytes_to_read, positions, sectors)

        result = bytearray()
        for i, (start, end) in enumerate(_pairwise(positions[:sectors + 1])):
            expected = min(sector_size, self.uncompressed_size - len(result))
            if self.single_sector:
                expected = self.uncompressed_size

            to_read = raw_bytes_to_read[start:end]

            if key is not None:
                to_read = _decrypt(to_read, (key + i) & _MASK_32)

            if checksums and checksums[i] and zlib.adler32(to_read, 0) != checksums[i]:
                error = DecryptionError if key is not None else CorruptSector
                raise error(f"Sector {i} of {filename!r} fails its checksum.")

            result += decompress_sector(
                to_read, expected, imploded=self.imploded, compressed=self.compressed
            )

        if len(result) != self.uncompressed_size:
            raise CorruptSector(
                f"{filename!r} decoded to {len(result)} bytes, expected {self.uncompressed_size}."
            )

        return bytes(result)

    def _sector_checksums(self, raw: bytes, positions: typing.List[int], sectors: int):
        block = raw[positions[sectors]:positions[sectors + 1]]
        if not block:
            return None
        return struct.unpack('<%dI' % sectors, decompress_sector(block, 4 * sectors))

    def store(
        self, contents: bytes, destination: typing.BinaryIO, sector_size: int,
        *, filename: bytes = b'', compression: int = COMPRESSION_ZLIB, imploded=False,
        encrypted=False, fix_key=False, single_sector=None, sector_crc=False
    ):
        """Write `contents` at the current position of `destination`.
        `file_position` must already be set, the fix-key depends on it."""
        self.exists = True
        self.uncompressed_size = len(contents)
        self.imploded = imploded
        self.compressed = bool(compression) and not imploded
        self.encrypted = encrypted
        self.fix_key = encrypted and fix_key

        if not contents:
            self.imploded = self.compressed = False
            self.compressed_size = 0
            return

        if single_sector is None:
            single_sector = self.uncompressed_size <= sector_size
        self.single_sector = single_sector
        self.has_crc = sector_crc and self.has_sector_table

        key = self.file_key(filename) if encrypted else None

        if self.single_sector:
            stored = compress_sector(contents, compression, imploded=imploded)
            if len(stored) == len(contents):
                self.imploded = self.compressed = False
            if key is not None:
                stored = _encrypt(stored, key)
            destination.write(stored)
            self.compressed_size = len(stored)
            return

        chunks = [contents[i:i + sector_size] for i in range(0, len(contents), sector_size)]

        if not self.has_sector_table:
            for i, chunk in enumerate(chunks):
                destination.write(chunk if key is None else _encrypt(chunk, key + i))
            self.compressed_size = self.uncompressed_size
            return

        stored = [compress_sector(chunk, compression, imploded=imploded) for chunk in chunks]
        checksums = [zlib.adler32(chunk, 0) for chunk in stored]
        if key is not None:
            stored = [_encrypt(chunk, key + i) for i, chunk in enumerate(stored)]

        entries = len(stored) + 1 + bool(self.has_crc)
        offsets = [4 * entries]
        for chunk in stored:
            offsets.append(offsets[-1] + len(chunk))

        crc_block = b''
        if self.has_crc:
            crc_block = struct.pack('<%dI' % len(checksums), *checksums)
            offsets.append(offsets[-1] + len(crc_block))

        table = struct.pack('<%dI' % entries, *offsets)
        if key is not None:
            table = _encrypt(table, key - 1)

        destination.write(table)
        for chunk in stored:
            destination.write(chunk)
        destination.write(crc_block)
        self.compressed_size = offsets[-1]


def _init_mpq_block_accessors():
    for k, (prop, desc) in MPQBlockEntry.flags_table.items():
        setattr(
            MPQBlockEntry, prop, property(
                lambda instance, key_=k: bool(instance.flags & key_),
                lambda instance, value, key_=k: setattr(
                    instance, 'flags',
                    instance.flags | key_ if value else instance.flags & ~key_
                ),
                doc=desc
            )
        )


_init_mpq_block_accessors()


class BlockTable:
    entries: typing.List[MPQBlockEntry]

    def __init__(self, entries: typing.List[MPQBlockEntry]):
        self.entries = entries

    @classmethod
    def from_bytes(cls, data: bytes, count: int) -> 'BlockTable':
        size = MPQBlockEntry.size()
        return cls([MPQBlockEntry.unpack(data, size * i) for i in range(count)])

    def to_bytes(self) -> bytes:
        return b''.join(entry.pack() for entry in self.entries)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def resolve(self, index: int) -> MPQBlockEntry:
        """The descriptor of a live file, never a placeholder."""
        if not 0 <= index < len(self.entries):
            raise BlockOutOfRange(f"Block {index} out of a {len(self.entries)} entry block table.")

        block = self.entries[index]
        if not block.exists or block.deleted:
            raise DeletedBlock(f"Block {index} holds no file.")
        return block

    def merge_high_positions(self, highs: typing.Sequence[int]):
        for block, high in zip(self.entries, highs):
            block.file_position = _FilePosition(merge_high_bits(block.file_position, high))


# Archive.

class _ByteSource:
    """Positional reads over in-memory bytes, a memory mapped file or a shared stream."""

    def __init__(self, data=None, *, stream: typing.BinaryIO = None, path=None):
        self._lock = threading.Lock()
        self._file = None
        self._map = None
        self._stream = None
        self._data = None

        if data is not None:
            self._data = bytes(data)
            self.size = len(self._data)
        elif stream is not None:
            self._stream = stream
            self.size = stream.seek(0, io.SEEK_END)
        else:
            self._file = open(path, 'rb')
            self.size = self._file.seek(0, io.SEEK_END)
            if self.size:
                self._map = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)

    def read_at(self, position: int, size: int) -> bytes:
        # every position comes from a table, a negative one means that table is corrupt
        if position < 0:
            raise CorruptTable(f"Offset {position} points before the start of the archive.")
        if self._data is not None:
            return self._data[position:position + size]
        if self._map is not None:
            return self._map[position:position + size]
        if self._stream is not None:
            with self._lock:
                self._stream.seek(position)
                return self._stream.read(size)
        return b''

    def close(self):
        """Releases what we opened ourselves. A stream given to us is left open."""
        if self._map is not None:
            self._map.close()
            self._map = None
        if self._file is not None:
            self._file.close()
            self._file = None


def find_mpq_header(source: _ByteSource) -> typing.Tuple[int, typing.Optional[_MPQUserData]]:
    """Offset of the MPQ header, searched at every 512 byte boundary, and the
    user data block that pointed to it if there was one."""
    for position in range(0, max(source.size - 3, 0), 0x200):
        magic = source.read_at(position, 4)

        if magic == _MPQ_HEADER_MAGIC:
            logging.debug("MPQ header found at %#x", position)
            return position, None

        if magic == _MPQ_USER_DATA_MAGIC:
            contents = source.read_at(position, _MPQUserData.size())
            if len(contents) != _MPQUserData.size():
                continue
            user_data = _MPQUserData.unpack(contents)
            header_position = position + user_data.offset_to_header
            if source.read_at(header_position, 4) == _MPQ_HEADER_MAGIC:
                logging.debug("MPQ header found at %#x through user data", header_position)
                return header_position, user_data

    raise BadSignature("No MPQ header found.")


class MPQArchive:
    start_pad: int
    raw_pre_archive: bytes
    user_data: typing.Optional[_MPQUserData]
    header: MPQHeader
    hash_table: HashTable
    block_table: BlockTable
    names: typing.Dict[typing.Tuple[int, int], FilePath]
    source: _ByteSource
    boot_file_path: typing.Optional[pathlib.Path]

    lang_id: typing.ClassVar[dict] = {
        0x00000000: 'neutral',
        0x00000409: 'enUS',
        0x00000809: 'enGB',
        0x0000040c: 'frFR',
        0x00000407: 'deDE',
        0x0000040a: 'esES',
        0x00000410: 'itIT',
        0x00000405: 'csCZ',
        0x00000419: 'ruRU',
        0x00000415: 'plPL',
        0x00000416: 'ptBR',
        0x00000816: 'ptPT',
        0x0000041f: 'tkTK',
        0x00000411: 'jaJA',
        0x00000412: 'koKR',
        0x00000404: 'zhTW',
        0x00000804: 'zhCN',
        0x0000041e: 'thTH',
    }

    def __init__(self,
                 boot_stream: typing.BinaryIO = None,
                 *,
                 boot_file_path: typing.Optional[typing.Union[str, pathlib.PurePath]] = None,
                 data: typing.Optional[bytes] = None,
                 start_pad: typing.Optional[int] = None,
                 listfile=True,
                 verify_checksums=True
                 ):
        """If given a stream, we don't close it"""

        self.user_data = None
        self.boot_file_path = None
        self.names = {}

        if data is not None:
            self.source = _ByteSource(data)
        elif boot_stream is not None:
            self.source = _ByteSource(stream=boot_stream)
        elif boot_file_path:
            self.boot_file_path = pathlib.Path(boot_file_path)
            self.source = _ByteSource(path=self.boot_file_path)
        else:
            raise RuntimeError("Neither a stream nor a filepath has been provided.")

        try:
            if start_pad is None:
                start_pad, self.user_data = find_mpq_header(self.source)
            self.start_pad = start_pad
            self.load_existing_stream(verify_checksums)
        except BaseException:
            self.source.close()
            raise

        if listfile:
            self._load_listfile()

    @classmethod
    def from_bytes(cls, data: bytes, **kwargs) -> 'MPQArchive':
        return cls(data=data, **kwargs)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.source.close()

    def __contains__(self, item):
        return self.hash_entry(item) is not None

    def load_existing_stream(self, verify_checksums=True):
        self.raw_pre_archive = self.source.read_at(0, self.start_pad)

        self.header = MPQHeader.parse(
            self.source.read_at(self.start_pad, MPQHeaderV3.size())
        )

        if isinstance(self.header, MPQHeaderV3):
            self._verify_digest(
                'header', self.header.md5_header, self.header.header_digest(), verify_checksums
            )

        self.hash_table = HashTable.from_bytes(
            self._fill_table(b'hash', self.header.get_hash_table_offset(),
                             self.header.hash_table_size, verify_checksums),
            self.header.hash_table_entries
        )
        self.block_table = BlockTable.from_bytes(
            self._fill_table(b'block', self.header.get_block_table_offset(),
                             self.header.block_table_size, verify_checksums),
            self.header.block_table_entries
        )

        if isinstance(self.header, MPQHeaderV1) and self.header.extended_block_table_offset:
            highs = self._fill_table(
                b'hi_block', self.header.extended_block_table_offset,
                self.header.extended_block_table_size, verify_checksums, encrypted=False
            )
            self.block_table.merge_high_positions(
                struct.unpack('<%dH' % self.header.block_table_entries, highs)
            )

        if self.header.archive_size > self.source.size - self.start_pad:
            logging.warning(
                "Header claims %d archive bytes, only %d available.",
                self.header.archive_size, self.source.size - self.start_pad
            )

        logging.info(
            "Opened MPQ format %d, %d hash entries, %d block entries, sector size %d",
            self.header.format_version, len(self.hash_table), len(self.block_table),
            self.header.sector_size
        )

    def _fill_table(self, which: bytes, offset: int, raw_size: int, verify_checksums: bool,
                    encrypted=True) -> bytes:
        name = which.decode()
        stored_size = self.header.stored_table_size(name)

        contents = self.source.read_at(offset + self.start_pad, stored_size)
        if len(contents) != stored_size:
            raise TruncatedTable(
                f"The {name} table needs {stored_size} bytes at {offset:#x}, "
                f"only {len(contents)} available."
            )

        if isinstance(self.header, MPQHeaderV3):
            self._verify_digest(
                f"{name} table",
                getattr(self.header, f"md5_{name}_table"),
                hashlib.md5(contents).digest(),
                verify_checksums
            )

        if encrypted:
            logging.debug("Decrypting the %s table", name)
            contents = _decrypt(contents, _hash(b'(%s table)' % which.replace(b'_', b' '), 'TABLE'))

        if self.header.is_table_compressed(name):
            try:
                contents = decompress_sector(contents, raw_size)
            except CorruptSector as e:
                raise CorruptTable(f"The {name} table does not decompress: {e}") from e

        return contents

    @staticmethod
    def _verify_digest(what: str, expected: bytes, actual: bytes, strict: bool):
        if expected == bytes(16) or expected == actual:
            return
        message = f"MD5 of the {what} is {actual.hex()}, expected {expected.hex()}."
        if strict:
            raise CorruptTable(message)
        logging.warning(message)

    def _load_listfile(self):
        if listfile_name not in self:
            logging.info("Archive has no listfile.")
            return

        try:
            contents = self.read_file(listfile_name)
        except MPQError as e:
            logging.warning("Listfile could not be read: %s", e)
            return

        stored = {(h.name_part_a, h.name_part_b) for h in self.hash_table.live_entries()}
        missing = 0
        for name in re.split(rb'[;\r\n]+', contents):
            name = name.strip()
            if not name:
                continue
            pair = filename_to_hash_pair(name)
            if pair in stored:
                self.names[pair] = FilePath(name)
            else:
                missing += 1

        if missing:
            logging.warning("%d listfile entries are not in the archive.", missing)

    def hash_entry(self, filename: typing.Union[str, bytes], locale=0, platform=0) \
            -> typing.Optional[MPQHashEntry]:
        return self.hash_table.find(_as_path(filename), locale, platform)

    def file_exists(self, filename: typing.Union[str, bytes], locale=0, platform=0) -> bool:
        hash_ = self.hash_entry(filename, locale, platform)
        if hash_ is None:
            return False
        try:
            self.block_table.resolve(hash_.block_index)
        except (BlockOutOfRange, DeletedBlock):
            return False
        return True

    def block_entry(self, filename: typing.Union[str, bytes], locale=0, platform=0) -> MPQBlockEntry:
        filename = _as_path(filename)
        return self.block_table.resolve(self.hash_table.lookup(filename, locale, platform))

    def read_file(self, filename: typing.Union[str, bytes],
                  *, locale=0, platform=0, fallback=True
                  ) -> bytes:
        """Extract `filename` from the archive.

        When the requested locale is absent and `fallback` is set, the neutral
        locale is tried instead. Raises `NotFound` when the name is not stored,
        and a `CorruptSector` subclass when its data cannot be decoded."""
        filename = _as_path(filename)

        hash_ = self.hash_table.find(filename, locale, platform)
        if hash_ is None and fallback and (locale, platform) != (0, 0):
            hash_ = self.hash_table.find(filename, 0, 0)
        if hash_ is None:
            raise NotFound(f"Hash not found {filename.decode(errors='replace')}")

        block = self.block_table.resolve(hash_.block_index)

        return block.extract_file(
            self.source, self.header.sector_size,
            filename=filename, offset=self.start_pad
        )

    def list_entries(self) -> typing.List[typing.Tuple[typing.Optional[FilePath], int]]:
        """Every stored file as (name if known, block index)."""
        entries = []
        for hash_ in self.hash_table.live_entries():
            try:
                self.block_table.resolve(hash_.block_index)
            except (BlockOutOfRange, DeletedBlock):
                continue
            entries.append(
                (self.names.get((hash_.name_part_a, hash_.name_part_b)), hash_.block_index)
            )
        return entries

    def all_files(self) -> typing.Iterator[typing.Union[FilePath, typing.Tuple[int, int]]]:
        for hash_ in self.hash_table.live_entries():
            pair = (hash_.name_part_a, hash_.name_part_b)
            yield self.names.get(pair, pair)

    def unknown_files(self):
        return [file_ for file_ in self.all_files() if isinstance(file_, tuple)]

    def extract(self) -> typing.Dict[FilePath, bytes]:
        """Every file with a known name, read with its first stored locale."""
        result = {}
        for hash_ in self.hash_table.live_entries():
            name = self.names.get((hash_.name_part_a, hash_.name_part_b))
            if name is None or name in result:
                continue
            result[name] = self.read_file(name, locale=hash_.locale, platform=hash_.platform)
        return result

    def insight(self) -> dict:
        locales = sorted({h.locale for h in self.hash_table.live_entries()})
        return {
            'format': MPQFormat(self.header.format_version).name,
            'sector_size': self.header.sector_size,
            'archive_size': self.header.archive_size,
            'hash_table_entries': len(self.hash_table),
            'block_table_entries': len(self.block_table),
            'files': len(self.list_entries()),
            'unknown_files': len(self.unknown_files()),
            'locales': [self.lang_id.get(locale, hex(locale)) for locale in locales],
        }


def open_archive(source: typing.Union[bytes, bytearray, memoryview, str, pathlib.PurePath,
                                      typing.BinaryIO],
                 **kwargs) -> MPQArchive:
    """Open an archive from bytes, a file path or a seekable binary stream."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return MPQArchive(data=source, **kwargs)
    if isinstance(source, (str, pathlib.PurePath)):
        return MPQArchive(boot_file_path=source, **kwargs)
    return MPQArchive(source, **kwargs)


# Writing.

def add_file(to_add: typing.Dict[typing.Tuple[bytes, int, int], typing.Dict],
             name: typing.Union[str, bytes],
             *,
             source_path: pathlib.Path = None,
             contents=b'',
             locale=0, platform=0,
             compression=COMPRESSION_ZLIB,
             imploded=False,
             encrypted=False,
             fix_key=False,
             single_sector=None,
             sector_crc=False):

    name = _as_path(name)
    key = (_fold(name), locale, platform)
    if key in to_add:
        raise DuplicateEntry(f"{name!r} (locale {locale:#x}, platform {platform}) added twice.")

    to_add[key] = {
        'name': name,
        'source_path': source_path,
        'contents': contents,
        'compression': compression,
        'imploded': imploded,
        'encrypted': encrypted,
        'fix_key': fix_key,
        'single_sector': single_sector,
        'sector_crc': sector_crc,
    }


def _write_table(target: typing.BinaryIO, header: MPQHeader, which: bytes, contents: bytes,
                 compress_tables: bool, encrypted=True) -> int:
    """Write one table, returns its offset from the header."""
    name = which.decode()
    raw_size = len(contents)

    if compress_tables and isinstance(header, MPQHeaderV3):
        contents = compress_sector(contents, COMPRESSION_ZLIB)
    if encrypted:
        contents = _encrypt(contents, _hash(b'(%s table)' % which.replace(b'_', b' '), 'TABLE'))

    if isinstance(header, MPQHeaderV3):
        setattr(header, header._compressed_size_fields[name], len(contents))
        setattr(header, f"md5_{name}_table", hashlib.md5(contents).digest())
        logging.debug("%s table stored in %d of %d bytes", name, len(contents), raw_size)

    position = target.tell()
    target.write(contents)
    return position


def flush(
        target: typing.BinaryIO,
        to_add: typing.Dict[typing.Tuple[bytes, int, int], typing.Dict],
        pre_header: bytes = b'',
        *,
        format_version=MPQFormat.BASIC,
        sector_size_exp=3,
        hash_table_entries=None,
        listfile=True,
        compress_tables=False) -> MPQHeader:
    """Write a whole archive. Tables are rebuilt from `to_add`, nothing is patched in place.

    The layout is `pre_header`, header, hash table, block table, then the file data.
    Compressed tables and the hi-block table are written after the data."""

    try:
        header_class = _header_classes[format_version]
    except KeyError:
        raise UnsupportedFormat(f"MPQ format version {format_version} not supported.") from None

    target.write(pre_header)
    header_position = target.tell()

    header = header_class.empty(sector_size_exp)
    target.write(header.pack())

    to_add = dict(to_add)
    names = {}
    for (path, _, _), file_data in to_add.items():
        names.setdefault(path, file_data['name'])
    if listfile and _fold(listfile_name) not in names:
        names[_fold(listfile_name)] = listfile_name
        list_file = io.BytesIO()
        for path in names.values():
            list_file.write(path)
            list_file.write(b'\r\n')
        add_file(to_add, listfile_name, contents=list_file.getvalue())

    hash_table = HashTable.empty(hash_table_entries or _closest_power_of_two(len(to_add)))
    block_table = BlockTable([])

    # Compressed tables have no size until the blocks are known, they go after the data.
    tables_first = not (compress_tables and isinstance(header, MPQHeaderV3))
    tables_position = target.tell()
    if tables_first:
        target.write(bytes((len(hash_table) + len(to_add)) * MPQHeader.entry_size))

    for (_, locale, platform), file_data in to_add.items():
        path = file_data['name']
        if file_data['source_path']:
            with open(file_data['source_path'], "rb") as f:
                content = f.read()
        else:
            content = file_data['contents']

        hash_table.insert(path, len(block_table), locale, platform)

        block = MPQBlockEntry(_FilePosition(target.tell() - header_position), 0, len(content), 0)
        block_table.entries.append(block)
        block.store(
            content, target, header.sector_size,
            filename=path,
            compression=file_data['compression'],
            imploded=file_data['imploded'],
            encrypted=file_data['encrypted'],
            fix_key=file_data['fix_key'],
            single_sector=file_data['single_sector'],
            sector_crc=file_data['sector_crc'],
        )

    data_end = target.tell()
    if tables_first:
        target.seek(tables_position)

    header.set_hash_table_offset(
        _write_table(target, header, b'hash', hash_table.to_bytes(), compress_tables)
        - header_position
    )
    header.set_block_table_offset(
        _write_table(target, header, b'block', block_table.to_bytes(), compress_tables)
        - header_position
    )

    if tables_first:
        target.seek(data_end)

    highs = [block.position_high for block in block_table]
    if any(highs):
        if not isinstance(header, MPQHeaderV1):
            raise MPQError("File data past 4 GiB needs an extended format.")
        header.extended_block_table_offset = _write_table(
            target, header, b'hi_block', struct.pack('<%dH' % len(highs), *highs),
            compress_tables, encrypted=False
        ) - header_position

    end = target.tell()
    header.hash_table_entries = HashTableEntries(len(hash_table))
    header.block_table_entries = len(block_table)
    header.set_archive_size(end - header_position)

    if isinstance(header, MPQHeaderV3):
        header.md5_header = header.header_digest()

    target.seek(header_position)
    target.write(header.pack())
    target.seek(end)

    return header
