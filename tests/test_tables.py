"""
Archive headers, hash table and block table.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import struct
import unittest

import mopyq


class TestHeader(unittest.TestCase):

    def test_sizes(self):
        self.assertEqual(mopyq.MPQHeader.size(), 32)
        self.assertEqual(mopyq.MPQHeaderV1.size(), 44)
        self.assertEqual(mopyq.MPQHeaderV2.size(), 68)
        self.assertEqual(mopyq.MPQHeaderV3.size(), 208)

    def test_parse_every_version(self):
        for version, klass in mopyq._header_classes.items():
            header = klass.empty(block_size_exp=4)
            header.hash_table_entries = 16
            header.block_table_entries = 3
            parsed = mopyq.MPQHeader.parse(header.pack())
            self.assertEqual(parsed.pack(), header.pack())
            self.assertIs(type(parsed), klass)
            self.assertEqual(parsed, header)
            self.assertEqual(parsed.format_version, version)
            self.assertEqual(parsed.header_size, klass.size())
            self.assertEqual(parsed.sector_size, 512 << 4)

    def test_bad_signature(self):
        with self.assertRaises(mopyq.BadSignature):
            mopyq.MPQHeader.parse(b'PK\x03\x04' + bytes(60))

    def test_unsupported_version(self):
        header = mopyq.MPQHeader.empty().pack()
        header = header[:12] + struct.pack('<H', 4) + header[14:]
        with self.assertRaises(mopyq.UnsupportedFormat):
            mopyq.MPQHeader.parse(header)

    def test_truncated(self):
        with self.assertRaises(mopyq.TruncatedHeader):
            mopyq.MPQHeader.parse(mopyq.MPQHeader.empty().pack()[:20])
        with self.assertRaises(mopyq.TruncatedHeader):
            mopyq.MPQHeader.parse(mopyq.MPQHeaderV3.empty().pack()[:100])

    def test_declared_size_below_basic_header(self):
        header = mopyq.MPQHeader.empty()
        header.header_size = 16
        with self.assertRaises(mopyq.TruncatedHeader):
            mopyq.MPQHeader.parse(header.pack())

    def test_fields_past_stored_size_read_as_zero(self):
        header = mopyq.MPQHeaderV1.empty()
        header.header_size = mopyq.MPQHeader.size()
        header.hash_table_entries = 16
        # whatever follows the stored header belongs to the hash table
        data = header.pack()[:mopyq.MPQHeader.size()] + b'\xab' * 64

        with self.assertLogs(level='WARNING'):
            parsed = mopyq.MPQHeader.parse(data)
        self.assertIs(type(parsed), mopyq.MPQHeaderV1)
        self.assertEqual(parsed.hash_table_entries, 16)
        self.assertEqual(parsed.extended_block_table_offset, 0)
        self.assertEqual(parsed.hash_table_offset_high, 0)
        self.assertEqual(parsed.block_table_offset_high, 0)

        with self.assertLogs(level='WARNING'):
            short = mopyq.MPQHeader.parse(data[:mopyq.MPQHeader.size()])
        self.assertEqual(short, parsed)

    def test_high_bits(self):
        self.assertEqual(mopyq.merge_high_bits(0x12345678, 0x9ABC), 0x9ABC12345678)
        self.assertEqual(mopyq.split_high_bits(0x9ABC12345678), (0x12345678, 0x9ABC))
        self.assertEqual(mopyq.merge_high_bits(0x10, 0), 0x10)

    def test_v1_offsets_merge_high_bits(self):
        header = mopyq.MPQHeaderV1.empty()
        header.set_hash_table_offset(0x1_0000_0020)
        self.assertEqual(header.hash_table_offset, 0x20)
        self.assertEqual(header.hash_table_offset_high, 1)
        self.assertEqual(header.get_hash_table_offset(), 0x1_0000_0020)

    def test_basic_offsets_limited_to_32_bits(self):
        header = mopyq.MPQHeader.empty()
        with self.assertRaises(mopyq.MPQError):
            header.set_block_table_offset(0x1_0000_0000)

    def test_v1_archive_size_from_hash_table(self):
        header = mopyq.MPQHeaderV1.empty()
        header.hash_table_offset, header.hash_table_entries = 0x300, 4
        header.block_table_offset, header.block_table_entries = 0x100, 2
        self.assertEqual(header.archive_size, 0x300 + 4 * 16)

    def test_v1_archive_size_from_block_table(self):
        header = mopyq.MPQHeaderV1.empty()
        header.hash_table_offset, header.hash_table_entries = 0x100, 4
        header.block_table_offset, header.block_table_entries = 0x200, 2
        self.assertEqual(header.archive_size, 0x200 + 2 * 16)

    def test_v1_archive_size_from_extended_block_table(self):
        header = mopyq.MPQHeaderV1.empty()
        header.hash_table_offset, header.hash_table_entries = 0x100, 4
        header.block_table_offset, header.block_table_entries = 0x200, 2
        header.extended_block_table_offset = 0x300
        self.assertEqual(header.archive_size, 0x300 + 2 * 2)

    def test_v2_archive_size(self):
        header = mopyq.MPQHeaderV2.empty()
        header.set_archive_size(0x1_2345_6789)
        self.assertEqual(header.archive_size, 0x1_2345_6789)

    def test_v3_compressed_tables(self):
        header = mopyq.MPQHeaderV3.empty()
        header.hash_table_entries = 16
        header.hash_table_size_64 = 100
        header.block_table_entries = 2
        header.block_table_size_64 = 32
        self.assertTrue(header.is_hash_table_compressed())
        self.assertFalse(header.is_block_table_compressed())
        self.assertEqual(header.stored_table_size('hash'), 100)
        self.assertEqual(header.stored_table_size('block'), 32)

    def test_v3_header_digest(self):
        header = mopyq.MPQHeaderV3.empty()
        digest = header.header_digest()
        header.md5_header = digest
        self.assertEqual(header.header_digest(), digest)
        header.block_table_entries = 1
        self.assertNotEqual(header.header_digest(), digest)


class TestHashTable(unittest.TestCase):

    def test_power_of_two(self):
        for count in (0, 3, 5, 100):
            with self.assertRaises(mopyq.CorruptTable):
                mopyq.HashTable.empty(count)
        self.assertEqual(len(mopyq.HashTable.empty(16)), 16)

    def test_empty_slots(self):
        table = mopyq.HashTable.empty(4)
        self.assertTrue(all(e.state is mopyq.SlotState.NEVER_USED for e in table))
        self.assertEqual(table.to_bytes(), b'\xff' * 64)

    def test_insert_lookup(self):
        table = mopyq.HashTable.empty(16)
        table.insert(b'war3map.j', 0)
        table.insert(b'war3map.w3e', 1)
        self.assertEqual(table.lookup(b'WAR3MAP.J'), 0)
        self.assertEqual(table.lookup(b'war3map.w3e'), 1)
        with self.assertRaises(mopyq.NotFound):
            table.lookup(b'war3map.doo')

    def test_slot_is_index_for_path_when_free(self):
        table = mopyq.HashTable.empty(64)
        slot = table.insert(b'(listfile)', 0)
        self.assertEqual(slot, mopyq.index_for_path(b'(listfile)', 64))

    def test_locale_and_platform_are_part_of_the_key(self):
        table = mopyq.HashTable.empty(8)
        table.insert(b'file.txt', 0)
        table.insert(b'file.txt', 1, locale=0x407)
        self.assertEqual(table.lookup(b'file.txt'), 0)
        self.assertEqual(table.lookup(b'file.txt', locale=0x407), 1)
        with self.assertRaises(mopyq.NotFound):
            table.lookup(b'file.txt', locale=0x40c)

    def test_duplicate(self):
        table = mopyq.HashTable.empty(8)
        table.insert(b'file.txt', 0)
        with self.assertRaises(mopyq.DuplicateEntry):
            table.insert(b'FILE.TXT', 1)

    def test_full_and_deleted_slot(self):
        names = [b'a.txt', b'b.txt', b'c.txt', b'd.txt']
        table = mopyq.HashTable.empty(4)
        for index, name in enumerate(names):
            table.insert(name, index)

        with self.assertRaises(mopyq.HashTableFull):
            table.insert(b'e.txt', 4)

        removed_slot = next(i for i, e in enumerate(table.entries) if e.block_index == 1)
        self.assertEqual(table.remove(b'b.txt'), 1)
        self.assertIs(table.entries[removed_slot].state, mopyq.SlotState.DELETED)
        self.assertIsNone(table.find(b'b.txt'))

        # the walk goes on past the deleted slot
        for index, name in enumerate(names):
            if name != b'b.txt':
                self.assertEqual(table.lookup(name), index)

        self.assertEqual(table.insert(b'e.txt', 4), removed_slot)
        self.assertEqual(table.lookup(b'e.txt'), 4)

    def test_remove_missing(self):
        with self.assertRaises(mopyq.NotFound):
            mopyq.HashTable.empty(4).remove(b'nothing')

    def test_bytes(self):
        table = mopyq.HashTable.empty(8)
        table.insert(b'file.txt', 3, locale=0x409, platform=0)
        parsed = mopyq.HashTable.from_bytes(table.to_bytes(), 8)
        self.assertEqual(parsed.entries, table.entries)
        self.assertEqual(parsed.lookup(b'file.txt', locale=0x409), 3)


class TestBlockTable(unittest.TestCase):

    def test_out_of_range(self):
        table = mopyq.BlockTable([mopyq.MPQBlockEntry(0x20, 10, 10, 0x80000000)])
        self.assertIs(table.resolve(0), table.entries[0])
        with self.assertRaises(mopyq.BlockOutOfRange):
            table.resolve(1)
        with self.assertRaises(mopyq.BlockOutOfRange):
            table.resolve(-1)

    def test_placeholders(self):
        table = mopyq.BlockTable([
            mopyq.MPQBlockEntry(0x20, 0, 0, 0),
            mopyq.MPQBlockEntry(0x20, 0, 0, 0x80000000 | 0x02000000),
        ])
        for index in range(2):
            with self.assertRaises(mopyq.DeletedBlock):
                table.resolve(index)

    def test_flags(self):
        block = mopyq.MPQBlockEntry(0, 0, 0, 0x80000000 | 0x200 | 0x10000)
        self.assertTrue(block.exists)
        self.assertTrue(block.compressed)
        self.assertTrue(block.encrypted)
        self.assertFalse(block.imploded)
        self.assertFalse(block.single_sector)
        block.single_sector = True
        self.assertEqual(block.flags, 0x81010200)
        block.compressed = False
        self.assertEqual(block.flags, 0x81010000)

    def test_high_positions(self):
        table = mopyq.BlockTable([mopyq.MPQBlockEntry(0x20, 0, 0, 0), mopyq.MPQBlockEntry(0x40, 0, 0, 0)])
        table.merge_high_positions([0, 2])
        self.assertEqual(table.entries[0].file_position, 0x20)
        self.assertEqual(table.entries[1].file_position, 0x2_0000_0040)
        self.assertEqual(table.entries[1].position_high, 2)
        self.assertEqual(table.entries[1].pack()[:4], struct.pack('<I', 0x40))

    def test_record(self):
        block = mopyq.MPQBlockEntry(0x20, 7, 9, 0x80000200)
        self.assertEqual(block.pack(), struct.pack('<4I', 0x20, 7, 9, 0x80000200))
        self.assertEqual(len(mopyq.BlockTable([block, block]).to_bytes()), 32)

    def test_bytes(self):
        table = mopyq.BlockTable([mopyq.MPQBlockEntry(0x20, 7, 9, 0x80000200)])
        parsed = mopyq.BlockTable.from_bytes(table.to_bytes(), 1)
        self.assertEqual(parsed.entries, table.entries)


if __name__ == "__main__":
    unittest.main(verbosity=2)
