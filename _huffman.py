"""
Adaptive Huffman coding used by MPQ for compression mask 0x01.

A stream starts with one byte naming the weight table the initial tree is
built from, then codes follow, bits least significant first. Symbol 0x100
ends the stream. Symbol 0x101 escapes a byte missing from the tree: the byte
follows as 8 raw bits and is grafted below the lightest leaf. Only table 0
adapts its weights after every byte, the other tables keep their tree as
built apart from escapes.

Nodes live in a circular list sorted by decreasing weight, and siblings are
neighbours in it: the heavier child is always the one just before
``child_lo``. Incrementing a weight swaps the node with the first node of
its old weight so the order holds.

Only the weights of table 0 are bundled here.
"""
import typing

END_OF_STREAM = 0x100
ESCAPE = 0x101

_weight_tables: typing.Dict[int, typing.Sequence[int]] = {
    0: (0x0A, 0x0A) + (0x01,) * 254,
}

_MAX_TABLE = 8


class _Node:
    __slots__ = ('value', 'weight', 'parent', 'child_lo', 'prev', 'next')

    def __init__(self, value=0, weight=0):
        self.value = value
        self.weight = weight
        self.parent = None
        self.child_lo = None
        self.prev = self.next = self


class _Tree:
    leaves: typing.Dict[int, _Node]

    def __init__(self, table: int):
        if table > _MAX_TABLE:
            raise ValueError(f"Unknown Huffman weight table {table}.")
        try:
            weights = _weight_tables[table]
        except KeyError:
            raise NotImplementedError(f"Huffman weight table {table} is not available.") from None

        self.adaptive = table == 0
        self.head = _Node()
        self.leaves = {}

        for value, weight in enumerate(weights):
            if weight:
                self.leaves[value] = self._insert_by_weight(_Node(value, weight))
        for value in (END_OF_STREAM, ESCAPE):
            self.leaves[value] = self._link_after(self.head.prev, _Node(value, 1))

        # pair nodes from the lightest up, parents find their place by weight
        child_lo = self.head.prev
        while child_lo is not self.head:
            child_hi = child_lo.prev
            if child_hi is self.head:
                break
            parent = self._insert_by_weight(_Node(0, child_hi.weight + child_lo.weight))
            child_lo.parent = child_hi.parent = parent
            parent.child_lo = child_lo
            child_lo = child_hi.prev

    @staticmethod
    def _link_after(anchor: _Node, node: _Node) -> _Node:
        node.prev = anchor
        node.next = anchor.next
        anchor.next.prev = node
        anchor.next = node
        return node

    @staticmethod
    def _unlink(node: _Node):
        node.prev.next = node.next
        node.next.prev = node.prev

    def _higher_or_equal(self, node: _Node, weight: int) -> _Node:
        while node is not self.head:
            if node.weight >= weight:
                return node
            node = node.prev
        return self.head

    def _insert_by_weight(self, node: _Node) -> _Node:
        return self._link_after(self._higher_or_equal(self.head.prev, node.weight), node)

    def increment(self, node: _Node):
        while node is not None:
            node.weight += 1
            anchor = self._higher_or_equal(node.prev, node.weight)
            leader = anchor.next
            if leader is not node:
                self._swap(anchor, leader, node)
            node = node.parent

    def _swap(self, anchor: _Node, leader: _Node, node: _Node):
        """Exchange the list places of `node` and `leader`, which sits before it.
        Each place keeps its parent, so the parents are exchanged too."""
        self._unlink(leader)
        self._link_after(node, leader)
        self._unlink(node)
        self._link_after(anchor, node)

        leader_was_lo = leader.parent.child_lo is leader
        if node.parent.child_lo is node:
            node.parent.child_lo = leader
        if leader_was_lo:
            leader.parent.child_lo = node
        node.parent, leader.parent = leader.parent, node.parent

    def graft(self, value: int):
        """Add `value` below the lightest leaf, next to that leaf's own value."""
        lightest = self.head.prev
        kept = self._link_after(self.head.prev, _Node(lightest.value, lightest.weight))
        added = self._link_after(self.head.prev, _Node(value, 0))
        kept.parent = added.parent = lightest
        lightest.child_lo = added
        self.leaves[kept.value] = kept
        self.leaves[value] = added
        self.increment(added)

    def decode(self, reader: '_BitReader') -> int:
        node = self.head.next
        while node.child_lo is not None:
            node = node.child_lo.prev if reader.bits(1) else node.child_lo
        return node.value

    def encode(self, writer: '_BitWriter', value: int):
        path = []
        node = self.leaves[value]
        while node.parent is not None:
            path.append(node is not node.parent.child_lo)
            node = node.parent
        for bit in reversed(path):
            writer.write(bit, 1)


class _BitReader:
    def __init__(self, data: bytes):
        self.data = data
        self.position = 0
        self.buffer = 0
        self.available = 0

    def bits(self, needed: int) -> int:
        while self.available < needed:
            if self.position >= len(self.data):
                raise ValueError("Huffman stream ends before its end marker.")
            self.buffer |= self.data[self.position] << self.available
            self.position += 1
            self.available += 8

        value = self.buffer & ((1 << needed) - 1)
        self.buffer >>= needed
        self.available -= needed
        return value


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

    def getvalue(self) -> bytes:
        if self.used:
            return bytes(self.result + bytes((self.buffer & 0xFF,)))
        return bytes(self.result)


def compress(data: bytes, table: int = 0) -> bytes:
    tree = _Tree(table)
    writer = _BitWriter()
    writer.write(table, 8)

    for value in data:
        if value in tree.leaves:
            tree.encode(writer, value)
        else:
            tree.encode(writer, ESCAPE)
            writer.write(value, 8)
            tree.graft(value)
        if tree.adaptive:
            tree.increment(tree.leaves[value])

    tree.encode(writer, END_OF_STREAM)
    return writer.getvalue()


def decompress(data: bytes) -> bytes:
    reader = _BitReader(data)
    tree = _Tree(reader.bits(8))

    result = bytearray()
    while True:
        value = tree.decode(reader)
        if value == END_OF_STREAM:
            break
        if value == ESCAPE:
            value = reader.bits(8)
            tree.graft(value)
        result.append(value)
        if tree.adaptive:
            tree.increment(tree.leaves[value])

    return bytes(result)
