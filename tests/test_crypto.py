"""
Crypt table, name hashing and the block cipher.

Run with:
    python -m unittest discover -v tests
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import random
import unittest

import mopyq


class TestCryptTable(unittest.TestCase):

    def test_size_and_first_value(self):
        table = mopyq.crypt_table()
        self.assertEqual(len(table), 0x500)
        self.assertEqual(table[0], 0x55C636E2)

    def test_values_fit_32_bits(self):
        self.assertTrue(all(0 <= value <= 0xFFFFFFFF for value in mopyq.crypt_table()))


class TestHash(unittest.TestCase):

    def test_table_keys(self):
        self.assertEqual(mopyq.hash_string('(hash table)', 'TABLE'), 0xC3AF3770)
        self.assertEqual(mopyq.hash_string('(block table)', 'TABLE'), 0xEC83B3A3)

    def test_case_insensitive(self):
        for hash_type in ('TABLE_OFFSET', 'HASH_A', 'HASH_B', 'TABLE'):
            self.assertEqual(
                mopyq.hash_string(b'units\\human\\footman.mdx', hash_type),
                mopyq.hash_string(b'UNITS\\HUMAN\\FOOTMAN.MDX', hash_type),
            )

    def test_slash_is_backslash(self):
        self.assertEqual(
            mopyq.filename_to_hash_pair(b'war3map/war3map.j'),
            mopyq.filename_to_hash_pair(b'war3map\\war3map.j'),
        )

    def test_hash_types_differ(self):
        values = {mopyq.hash_string(b'(listfile)', t) for t in ('TABLE_OFFSET', 'HASH_A', 'HASH_B', 'TABLE')}
        self.assertEqual(len(values), 4)

    def test_base_name_keys_the_file(self):
        self.assertEqual(mopyq._base_name(b'Scripts\\Blizzard.j'), b'Blizzard.j')
        self.assertEqual(mopyq._base_name(b'Scripts/Blizzard.j'), b'Blizzard.j')
        self.assertEqual(mopyq._base_name(b'Blizzard.j'), b'Blizzard.j')


class TestCipher(unittest.TestCase):

    def setUp(self):
        rng = random.Random(7)
        self.data = bytes(rng.getrandbits(8) for _ in range(1027))

    def test_decrypt_undoes_encrypt(self):
        key = mopyq.hash_string('(hash table)', 'TABLE')
        encrypted = mopyq._encrypt(self.data, key)
        self.assertNotEqual(encrypted, self.data)
        self.assertEqual(mopyq._decrypt(encrypted, key), self.data)

    def test_trailing_bytes_left_alone(self):
        encrypted = mopyq._encrypt(self.data, 0x12345678)
        self.assertEqual(len(encrypted), len(self.data))
        self.assertEqual(encrypted[-3:], self.data[-3:])

    def test_wrong_key(self):
        encrypted = mopyq._encrypt(self.data, 1)
        self.assertNotEqual(mopyq._decrypt(encrypted, 2), self.data)

    def test_negative_key_wraps(self):
        self.assertEqual(
            mopyq._encrypt(self.data, -1),
            mopyq._encrypt(self.data, 0xFFFFFFFF),
        )

    def test_empty(self):
        self.assertEqual(mopyq._encrypt(b'', 5), b'')
        self.assertEqual(mopyq._decrypt(b'', 5), b'')


class TestFileKey(unittest.TestCase):

    def test_plain_key_uses_base_name(self):
        block = mopyq.MPQBlockEntry(0x20, 0, 100, 0)
        self.assertEqual(
            block.file_key(b'dir\\file.txt'),
            mopyq.hash_string(b'file.txt', 'TABLE'),
        )

    def test_fix_key(self):
        block = mopyq.MPQBlockEntry(0x20, 0, 100, 0)
        block.fix_key = True
        base = mopyq.hash_string(b'file.txt', 'TABLE')
        self.assertEqual(
            block.file_key(b'dir\\file.txt'),
            ((base + 0x20) & 0xFFFFFFFF) ^ 100,
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
