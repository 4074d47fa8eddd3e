"""Bencode codec that works on raw bytes.

Byte strings are never decoded as text: torrents and tracker replies carry
binary hashes and compact peer lists. Values map onto Python types as
int, bytes, list and dict (with bytes keys).

Decoding tolerates dictionaries whose keys are out of order and keeps the
order they arrived in. A repeated key keeps the last value seen. Encoding
always sorts keys, so encode() output is canonical.
"""
import re

from errors import MalformedEncoding

_INTEGER = re.compile(rb'-?[0-9]+')
_MAX_LENGTH_DIGITS = 20
# CPython refuses int <-> decimal text conversions past 4300 digits, so big
# integers are converted in blocks of this many digits
_BLOCK_DIGITS = 4000
_BLOCK = 10 ** _BLOCK_DIGITS


class Encoded(bytes):
    """Bytes that are already bencoded; encode() copies them through untouched."""


def encode(value):
    out = []
    _encode(value, out)
    return b''.join(out)


def _encode(value, out):
    if isinstance(value, Encoded):
        out.append(bytes(value))
    elif isinstance(value, bool):
        raise TypeError(f"Cannot bencode type {type(value)}")
    elif isinstance(value, int):
        out.append(b'i' + int_to_digits(value) + b'e')
    elif isinstance(value, (bytes, bytearray)):
        out.append(b'%d:' % len(value))
        out.append(bytes(value))
    elif isinstance(value, str):
        _encode(value.encode('utf-8'), out)
    elif isinstance(value, (list, tuple)):
        out.append(b'l')
        for item in value:
            _encode(item, out)
        out.append(b'e')
    elif isinstance(value, dict):
        items = sorted((_dict_key(k, v) for k, v in value.items()), key=lambda pair: pair[0])
        out.append(b'd')
        previous = None
        for key, item in items:
            if key == previous:
                raise ValueError(f"duplicate dictionary key {key!r}")
            previous = key
            _encode(key, out)
            _encode(item, out)
        out.append(b'e')
    else:
        raise TypeError(f"Cannot bencode type {type(value)}")


def _dict_key(key, item):
    if isinstance(key, str):
        key = key.encode('utf-8')
    elif not isinstance(key, (bytes, bytearray)):
        raise TypeError(f"Dictionary keys must be bytes or str, not {type(key)}")
    return bytes(key), item


def int_to_digits(value):
    if value < 0:
        return b'-' + int_to_digits(-value)
    if value < _BLOCK:
        return b'%d' % value
    blocks = []
    while value:
        value, low = divmod(value, _BLOCK)
        blocks.append(low)
    head = b'%d' % blocks.pop()
    return head + b''.join((b'%d' % block).rjust(_BLOCK_DIGITS, b'0') for block in reversed(blocks))


def digits_to_int(text):
    if text.startswith(b'-'):
        return -digits_to_int(text[1:])
    if len(text) <= _BLOCK_DIGITS:
        return int(text)
    head = len(text) % _BLOCK_DIGITS or _BLOCK_DIGITS
    value = int(text[:head])
    for start in range(head, len(text), _BLOCK_DIGITS):
        value = value * _BLOCK + int(text[start:start + _BLOCK_DIGITS])
    return value


def decode(data):
    return _Decoder(data).decode_root()


def split_dict(data):
    """Return the raw encoded bytes of each value of a top-level dictionary.

    Used to carry parts of a torrent through a rewrite byte for byte.
    """
    decoder = _Decoder(data)
    if not decoder.data.startswith(b'd'):
        raise MalformedEncoding("expected a dictionary", 0)
    slices = {}
    try:
        for key, _, start, end in decoder.items():
            slices[key] = decoder.data[start:end]
    except RecursionError:
        raise MalformedEncoding("nesting too deep") from None
    decoder.finish()
    return slices


class _Decoder:
    def __init__(self, data):
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        elif not isinstance(data, bytes):
            raise TypeError(f"Cannot bdecode type {type(data)}")
        self.data = data
        self.pos = 0

    def decode_root(self):
        if not self.data:
            raise MalformedEncoding("empty input", 0)
        try:
            value = self.value()
        except RecursionError:
            raise MalformedEncoding("nesting too deep") from None
        self.finish()
        return value

    def finish(self):
        if self.pos != len(self.data):
            raise MalformedEncoding("trailing data after value", self.pos)

    def peek(self):
        if self.pos >= len(self.data):
            raise MalformedEncoding("unexpected end of data", self.pos)
        return self.data[self.pos:self.pos + 1]

    def value(self):
        marker = self.peek()
        if marker == b'i':
            return self.integer()
        if marker.isdigit():
            return self.string()
        if marker == b'l':
            return self.list()
        if marker == b'd':
            return {key: value for key, value, _, _ in self.items()}
        if marker == b'-':
            raise MalformedEncoding("negative byte string length", self.pos)
        raise MalformedEncoding(f"unexpected byte {marker!r}", self.pos)

    def integer(self):
        start = self.pos
        end = self.data.find(b'e', start + 1)
        if end == -1:
            raise MalformedEncoding("unterminated integer", start)
        text = self.data[start + 1:end]
        if not _INTEGER.fullmatch(text):
            raise MalformedEncoding(f"invalid integer {text[:32]!r}", start)
        self.pos = end + 1
        return digits_to_int(text)

    def string(self):
        start = self.pos
        colon = self.data.find(b':', start, start + _MAX_LENGTH_DIGITS + 1)
        if colon == -1:
            raise MalformedEncoding("truncated byte string length", start)
        length = self.data[start:colon]
        if not length.isdigit():
            raise MalformedEncoding(f"invalid byte string length {length!r}", start)
        end = colon + 1 + int(length)
        if end > len(self.data):
            raise MalformedEncoding("truncated byte string", start)
        self.pos = end
        return self.data[colon + 1:end]

    def list(self):
        start = self.pos
        self.pos += 1
        result = []
        while True:
            if self.pos >= len(self.data):
                raise MalformedEncoding("unterminated list", start)
            if self.data[self.pos:self.pos + 1] == b'e':
                self.pos += 1
                return result
            result.append(self.value())

    def items(self):
        """Yield (key, value, start, end) for the dictionary at the cursor."""
        start = self.pos
        self.pos += 1
        while True:
            if self.pos >= len(self.data):
                raise MalformedEncoding("unterminated dictionary", start)
            marker = self.data[self.pos:self.pos + 1]
            if marker == b'e':
                self.pos += 1
                return
            if not marker.isdigit():
                raise MalformedEncoding("dictionary key must be a byte string", self.pos)
            key = self.string()
            value_start = self.pos
            value = self.value()
            yield key, value, value_start, self.pos
