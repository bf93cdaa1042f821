"""
IMA ADPCM codec used by MPQ for 16 bit PCM wave sectors.

This is a lossy codec: a compressed sector decodes to the same number of
samples, but only signals the step table can follow (silence, slow ramps)
come back bit for bit.
"""
import struct
import typing

INITIAL_STEP_INDEX = 0x2C
MAX_STEP_INDEX = 0x58
DEFAULT_LEVEL = 4

_next_step_index = (
    -1, 0, -1, 4, -1, 2, -1, 6, -1, 1, -1, 5, -1, 3, -1, 7,
    -1, 1, -1, 5, -1, 3, -1, 7, -1, 2, -1, 4, -1, 6, -1, 8,
)

_step_sizes = (
    7, 8, 9, 10, 11, 12, 13, 14,
    16, 17, 19, 21, 23, 25, 28, 31,
    34, 37, 41, 45, 50, 55, 60, 66,
    73, 80, 88, 97, 107, 118, 130, 143,
    157, 173, 190, 209, 230, 253, 279, 307,
    337, 371, 408, 449, 494, 544, 598, 658,
    724, 796, 876, 963, 1060, 1166, 1282, 1411,
    1552, 1707, 1878, 2066, 2272, 2499, 2749, 3024,
    3327, 3660, 4026, 4428, 4871, 5358, 5894, 6484,
    7132, 7845, 8630, 9493, 10442, 11487, 12635, 13899,
    15289, 16818, 18500, 20350, 22385, 24623, 27086, 29794,
    32767,
)


def _next_index(index: int, encoded: int) -> int:
    return min(max(index + _next_step_index[encoded & 0x1F], 0), MAX_STEP_INDEX)


def _predict(predicted: int, encoded: int, difference: int) -> int:
    if encoded & 0x40:
        return max(predicted - difference, -32768)
    return min(predicted + difference, 32767)


def _samples(data: bytes) -> typing.Tuple[int, ...]:
    return struct.unpack('<%dh' % (len(data) // 2), data[:len(data) // 2 * 2])


def compress(data: bytes, channels: int = 1, level: int = DEFAULT_LEVEL) -> bytes:
    """Encode little endian 16 bit samples, interleaved when ``channels`` is 2."""
    if len(data) % 2:
        raise ValueError("ADPCM input must hold whole 16 bit samples.")
    if level < 2:
        raise ValueError("ADPCM compression level must be at least 2.")

    bit_shift = level - 1
    max_bit = min(1 << (bit_shift - 1), 0x20)
    samples = _samples(data)

    result = bytearray((0, bit_shift))
    predicted = list(samples[:channels])
    indexes = [INITIAL_STEP_INDEX] * channels

    for sample in predicted:
        result += struct.pack('<h', sample)

    channel = channels - 1
    for sample in samples[channels:]:
        channel = (channel + 1) % channels

        encoded = 0
        difference = sample - predicted[channel]
        if difference < 0:
            difference = -difference
            encoded |= 0x40

        step = _step_sizes[indexes[channel]]

        # below what the decoder always adds: repeat the previous sample
        if difference < (step >> bit_shift):
            if indexes[channel]:
                indexes[channel] -= 1
            result.append(0x80)
            continue

        while difference > (step << 1) and indexes[channel] < MAX_STEP_INDEX:
            indexes[channel] = min(indexes[channel] + 8, MAX_STEP_INDEX)
            step = _step_sizes[indexes[channel]]
            result.append(0x81)

        base = step >> bit_shift
        total = 0
        bit = 1
        while bit <= max_bit:
            if total + step <= difference:
                total += step
                encoded |= bit
            step >>= 1
            bit <<= 1

        predicted[channel] = _predict(predicted[channel], encoded, base + total)
        result.append(encoded)
        indexes[channel] = _next_index(indexes[channel], encoded)

    return bytes(result)


def decompress(data: bytes, channels: int = 1) -> bytes:
    if len(data) < 2:
        raise ValueError("ADPCM stream is too short to hold its bit shift.")

    bit_shift = data[1]
    position = 2
    result = bytearray()
    predicted = []

    for _ in range(channels):
        if position + 2 > len(data):
            return bytes(result)
        sample, = struct.unpack_from('<h', data, position)
        position += 2
        predicted.append(sample)
        result += struct.pack('<h', sample)

    indexes = [INITIAL_STEP_INDEX] * channels
    channel = channels - 1

    for encoded in data[position:]:
        channel = (channel + 1) % channels

        if encoded & 0x80:
            command = encoded & 0x7F
            if command == 0:
                if indexes[channel]:
                    indexes[channel] -= 1
                result += struct.pack('<h', predicted[channel])
                continue

            if command == 1:
                indexes[channel] = min(indexes[channel] + 8, MAX_STEP_INDEX)
            elif command != 2:
                indexes[channel] = max(indexes[channel] - 8, 0)

            # the next byte belongs to the same channel
            channel = (channel - 1) % channels
            continue

        step = _step_sizes[indexes[channel]]
        difference = step >> bit_shift
        for shift in range(6):
            if encoded & (1 << shift):
                difference += step >> shift

        predicted[channel] = _predict(predicted[channel], encoded, difference)
        result += struct.pack('<h', predicted[channel])
        indexes[channel] = _next_index(indexes[channel], encoded)

    return bytes(result)
