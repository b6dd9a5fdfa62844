# SPDX-License-Identifier: MIT
# Greetings to:
# - CHRP/PAPR NVRAM partition layout
# - powerpc-utils nvram(8)

import collections
import enum
import logging
import restruct


logger = logging.getLogger(__name__)

BLOCK_SIZE = 16
HEADER_SIZE = 16
NAME_SIZE = 12
MAX_NAME_LENGTH = 31
MAX_VALUE_LENGTH = 4096

# Partitions holding name=value data
NAME_VALUE_PARTITIONS = ('common', 'ibm,setupcfg', 'of-config')


class NVRAMError(Exception):
    def __init__(self, message, partition=None, offset=None):
        self.partition = partition
        self.offset = offset
        where = []
        if partition is not None:
            where.append('partition "{}"'.format(partition))
        if offset is not None:
            where.append('offset 0x{:x}'.format(offset))
        if where:
            message = '{} ({})'.format(message, ', '.join(where))
        super().__init__(message)

class CorruptHeader(NVRAMError):
    pass

class CorruptPartition(NVRAMError):
    pass

class PartitionNotFound(NVRAMError):
    pass

class EntryNotFound(NVRAMError):
    pass

class PartitionFull(NVRAMError):
    pass

class CorruptValue(NVRAMError):
    pass

class InvalidAssignment(NVRAMError, ValueError):
    pass

class UnknownDescriptor(NVRAMError):
    pass

class TruncatedData(NVRAMError):
    pass

class ShortWrite(NVRAMError):
    pass

class SizeMismatch(NVRAMError, ValueError):
    pass


class Signature(enum.IntEnum):
    SP       = 0x02
    OF       = 0x50
    FW       = 0x51
    HW       = 0x52
    System   = 0x70
    Config   = 0x71
    ErrorLog = 0x72
    Vendor   = 0x7e
    Free     = 0x7f
    OS       = 0xa0
    Panic    = 0xa1


class PartitionHeader(restruct.Struct):
    signature: UInt(8)
    checksum:  UInt(8)
    length:    UInt(16, order='be')
    name:      Data(12)

NameWords = restruct.Arr(restruct.UInt(16, order='be'), count=NAME_SIZE // 2)


def checksum(header):
    c_sum = header.signature + header.length + sum(restruct.parse(NameWords, header.name))
    # fold the carry back into 16 bits, then fold those into one byte
    c_sum = ((c_sum & 0xffff) + (c_sum >> 16)) & 0xffff
    c_sum2 = (c_sum >> 8) + (c_sum << 8)
    return ((c_sum + c_sum2) >> 8) & 0xff

def decode_name(raw: bytes) -> str:
    return raw[:NAME_SIZE].split(b'\x00', maxsplit=1)[0].rstrip(b' ').decode('ascii', errors='replace')

def name_matches(raw: bytes, name: str) -> bool:
    """ strncmp() over the fixed name field; NUL and space padding are ignored """
    wanted = name.encode('ascii', errors='replace')[:NAME_SIZE].split(b'\x00', maxsplit=1)[0]
    return raw[:NAME_SIZE].split(b'\x00', maxsplit=1)[0].rstrip(b' ') == wanted

def signature_name(signature: int) -> str:
    try:
        return Signature(signature).name
    except ValueError:
        return '0x{:02x}'.format(signature)


class Partition:
    """ View of one partition inside an image buffer. """

    def __init__(self, data, index: int, offset: int, header: PartitionHeader):
        self._data = data
        self.index = index
        self.offset = offset
        self.header = header

    @property
    def signature(self) -> int:
        return self.header.signature

    @property
    def name(self) -> str:
        return decode_name(self.header.name)

    @property
    def size(self) -> int:
        return self.header.length * BLOCK_SIZE

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def payload_offset(self) -> int:
        return self.offset + HEADER_SIZE

    @property
    def payload_length(self) -> int:
        return self.size - HEADER_SIZE

    @property
    def payload(self) -> bytes:
        return bytes(self._data[self.payload_offset:self.end])

    @property
    def raw(self) -> bytes:
        return bytes(self._data[self.offset:self.end])

    @property
    def checksum_valid(self) -> bool:
        return checksum(self.header) == self.header.checksum

    def __repr__(self):
        return '<Partition #{} {} "{}" at 0x{:x}, {} bytes>'.format(
            self.index, signature_name(self.signature), self.name, self.offset, self.size
        )


def iter_partitions(data):
    """
    Walk the partition headers of an image, in storage order.

    Checksum mismatches are only logged: firmware upgrades are known to leave stale checksums behind.
    Fewer than a header's worth of trailing bytes end the walk. A zero length or a partition running
    past the image raises CorruptPartition; partitions yielded before that stay valid.
    """
    offset = 0
    index = 0
    while offset < len(data):
        if len(data) - offset < HEADER_SIZE:
            logger.warning('ignoring %d trailing bytes at offset 0x%x', len(data) - offset, offset)
            break
        header = restruct.parse(PartitionHeader, bytes(data[offset:offset + HEADER_SIZE]))
        name = decode_name(header.name)

        if header.length == 0:
            raise CorruptPartition('partition length is zero', partition=name, offset=offset)
        size = header.length * BLOCK_SIZE
        if offset + size > len(data):
            raise CorruptPartition(
                'partition of {} bytes runs past end of image ({} bytes)'.format(size, len(data)),
                partition=name, offset=offset
            )

        partition = Partition(data, index, offset, header)
        expected = checksum(header)
        if expected != header.checksum:
            logger.warning('partition "%s" at offset 0x%x: checksum should be %02x, not %02x',
                name, offset, expected, header.checksum)
        yield partition

        offset += size
        index += 1

def parse_partitions(data, strict=False):
    """ Partitions read before a corrupt one are kept unless strict is set. """
    partitions = []
    try:
        for partition in iter_partitions(data):
            partitions.append(partition)
    except CorruptPartition as e:
        if strict:
            raise
        logger.error('%s', e)
    return partitions

def find_partition(partitions, signature=None, name=None, after=None):
    """
    Find the first partition matching signature and name, in storage order.

    A signature of None (or 0) matches any signature, a name of None any name.
    With after given, the search resumes at the partition following it.
    """
    start = 0
    if after is not None:
        for i, partition in enumerate(partitions):
            if partition is after:
                start = i + 1
                break
        else:
            return None

    for partition in partitions[start:]:
        if signature and partition.signature != signature:
            continue
        if name is not None and not name_matches(partition.header.name, name):
            continue
        return partition
    return None

def format_table(partitions) -> str:
    lines = [' # Sig Chk  Len  Name']
    for i, p in enumerate(partitions):
        lines.append('{:2d}  {:02x}  {:02x}  {:04x} {}'.format(
            i, p.signature, p.header.checksum, p.header.length, p.name
        ))
    return '\n'.join(lines)


class NVRAMImage:
    """
    An NVRAM image and the partitions found in it.

    Parsing is lenient: when a partition is corrupt, the error is logged and kept in `corruption`,
    and the partitions before it remain available.
    """

    def __init__(self, data):
        self.data = bytearray(data)
        self.partitions = []
        self.corruption = None
        try:
            for partition in iter_partitions(self.data):
                self.partitions.append(partition)
        except NVRAMError as e:
            logger.error('%s', e)
            self.corruption = e
        logger.info('NVRAM contains %d partitions', len(self.partitions))

    @property
    def size(self) -> int:
        return len(self.data)

    def __len__(self):
        return len(self.partitions)

    def __iter__(self):
        return iter(self.partitions)

    def find(self, signature=None, name=None, after=None):
        return find_partition(self.partitions, signature=signature, name=name, after=after)

    def find_all(self, signature=None, name=None):
        partition = self.find(signature, name)
        while partition is not None:
            yield partition
            partition = self.find(signature, name, after=partition)

    def config(self, partition):
        if isinstance(partition, str):
            name = partition
            partition = self.find(name=name)
            if partition is None:
                raise PartitionNotFound('there is no "{}" partition'.format(name))
        return ConfigList(partition)

    def replace(self, update):
        partition = self.find(name=update.name)
        if partition is None:
            raise PartitionNotFound('there is no "{}" partition'.format(update.name))
        if len(update.data) != partition.size:
            raise SizeMismatch(
                'replacement is {} bytes, partition holds {}'.format(len(update.data), partition.size),
                partition=partition.name, offset=partition.offset
            )
        self.data[partition.offset:partition.end] = update.data
        partition.header = restruct.parse(PartitionHeader, bytes(self.data[partition.offset:partition.payload_offset]))
        return partition


def make_partition(signature: int, name: str, payload: bytes = b'', blocks=None, checksum_value=None) -> bytes:
    """ Build the bytes of a partition, header included; blocks defaults to the smallest fit. """
    if blocks is None:
        blocks = 1 + (len(payload) + BLOCK_SIZE - 1) // BLOCK_SIZE
    capacity = blocks * BLOCK_SIZE - HEADER_SIZE
    if len(payload) > capacity:
        raise PartitionFull('payload of {} bytes does not fit in {} bytes'.format(len(payload), capacity), partition=name)
    raw_name = name.encode('ascii')
    if len(raw_name) > NAME_SIZE:
        raise ValueError('partition name longer than {} bytes: {!r}'.format(NAME_SIZE, name))

    header = PartitionHeader(signature=int(signature), checksum=0, length=blocks, name=raw_name.ljust(NAME_SIZE, b'\x00'))
    header.checksum = checksum(header) if checksum_value is None else checksum_value
    return restruct.emit(PartitionHeader, header).getvalue() + payload.ljust(capacity, b'\x00')


def hexdump(data, base: int = 0) -> str:
    lines = []
    for offset in range(0, len(data), 16):
        chunk = bytes(data[offset:offset + 16])
        groups = ' '.join(chunk[i:i + 4].hex().ljust(8) for i in range(0, 16, 4))
        text = ''.join(chr(b) if 0x20 <= b <= 0x7e else '.' for b in chunk)
        lines.append('0x{:08x}  {} |{}|'.format(base + offset, groups, text.ljust(16)))
    return '\n'.join(lines)


## name=value configuration lists

ConfigEntry = collections.namedtuple('ConfigEntry', ('name', 'value', 'offset'))
PartitionUpdate = collections.namedtuple('PartitionUpdate', ('name', 'data'))


def escape_value(v: bytes) -> bytes:
    res = bytearray()

    i = 0
    while i < len(v):
        if v[i] not in (0x00, 0xff):
            res.append(v[i])
            i += 1
            continue

        fill = v[i]
        n = 0
        while i < len(v) and v[i] == fill and n < 0x7f:
            n += 1
            i += 1
        res.append(0xff)
        res.append(n | 0x80 if fill == 0xff else n)

    return bytes(res)

def decode_value(v: bytes, limit: int = MAX_VALUE_LENGTH) -> bytes:
    """
    Expand the run-length escapes in a config value.

    0xFF is followed by a count byte: the low 7 bits give the run length,
    the high bit selects 0xFF instead of 0x00 as fill byte.
    """
    res = bytearray()

    i = 0
    while i < len(v):
        if v[i] == 0xff:
            i += 1
            if i >= len(v):
                raise CorruptValue('escape sequence runs past end of value', offset=i - 1)
            l = v[i] & 0x7f
            fill = b'\xff' if v[i] & 0x80 else b'\x00'
            if len(res) + l > limit:
                raise CorruptValue('value longer than {} bytes'.format(limit), offset=i)
            res.extend(fill * l)
        else:
            if len(res) >= limit:
                raise CorruptValue('value longer than {} bytes'.format(limit), offset=i)
            res.append(v[i])
        i += 1

    return bytes(res)

def encode_config(entries) -> bytes:
    res = bytearray()
    for entry in entries:
        if isinstance(entry, str):
            entry = entry.encode('latin-1')
        res.extend(entry + b'\x00')
    res.append(0)
    return bytes(res)


class ConfigList:
    """ The name=value entries of a partition; every iteration rescans the payload. """

    def __init__(self, partition: Partition):
        self.partition = partition

    def __iter__(self):
        payload = self.partition.payload
        name = self.partition.name

        pos = 0
        while pos < len(payload):
            end = payload.find(b'\x00', pos)
            if end < 0:
                logger.warning('partition "%s": entry at offset 0x%x runs off end of partition', name, pos)
                return
            if end == pos:
                return

            key, sep, value = payload[pos:end].partition(b'=')
            if not sep:
                logger.warning('partition "%s": no = sign in entry at offset 0x%x, skipping', name, pos)
            elif len(key) > MAX_NAME_LENGTH:
                logger.warning('partition "%s": name longer than %d chars at offset 0x%x, skipping',
                    name, MAX_NAME_LENGTH, pos)
            else:
                yield ConfigEntry(key.decode('ascii', errors='replace'), value, pos)
            pos = end + 1

        logger.warning('partition "%s": entry list is not terminated', name)

    def items(self):
        return [(e.name, e.value) for e in self]


def lookup(partition: Partition, name: str):
    for entry in ConfigList(partition):
        if entry.name == name:
            return entry.value.decode('latin-1')
    return None

def lookup_all(image: NVRAMImage, name: str, partitions=NAME_VALUE_PARTITIONS):
    for pname in partitions:
        partition = image.find(name=pname)
        if partition is None:
            continue
        for entry in ConfigList(partition):
            if entry.name == name:
                yield partition, entry.value.decode('latin-1')


def update_config(image: NVRAMImage, partition_name: str, assignment, escape: bool = False) -> PartitionUpdate:
    """
    Build a copy of a name=value partition with one existing entry replaced.

    The entries after the replaced one move to follow the new value, the rest of the partition
    is zero-filled and the header checksum is recomputed. Nothing is written back: persist the
    returned PartitionUpdate with write_partition() and/or NVRAMImage.replace().
    """
    partition = image.find(name=partition_name)
    if partition is None:
        raise PartitionNotFound('there is no "{}" partition'.format(partition_name))

    if isinstance(assignment, str):
        assignment = assignment.encode('latin-1')
    key, sep, value = assignment.partition(b'=')
    if not sep or not key:
        raise InvalidAssignment('expected name=value, got {!r}'.format(assignment), partition=partition.name)
    if escape:
        value = escape_value(value)
    if b'\x00' in key + value:
        raise InvalidAssignment('NUL byte in {!r}'.format(assignment), partition=partition.name)

    prefix = key + b'='
    payload = partition.payload
    match = None
    pos = 0
    while True:
        end = payload.find(b'\x00', pos)
        if end < 0:
            raise CorruptPartition('entry list is not terminated', partition=partition.name,
                offset=partition.payload_offset + pos)
        if end == pos:
            break
        if match is None and payload.startswith(prefix, pos):
            match = (pos, end)
        pos = end + 1

    if match is None:
        raise EntryNotFound('config var {} does not exist'.format(key.decode('latin-1')), partition=partition.name)

    start, end = match
    new_payload = payload[:start] + prefix + value + b'\x00' + payload[end + 1:pos + 1]
    if len(new_payload) > partition.payload_length:
        raise PartitionFull(
            'not enough room for {}: {} bytes needed, {} available'.format(
                assignment.decode('latin-1'), len(new_payload), partition.payload_length
            ),
            partition=partition.name
        )
    new_payload += bytes(partition.payload_length - len(new_payload))

    header = restruct.parse(PartitionHeader, bytes(image.data[partition.offset:partition.payload_offset]))
    header.checksum = checksum(header)
    logger.debug('partition "%s": replacing entry at payload offset 0x%x', partition.name, start)
    return PartitionUpdate(partition.name, restruct.emit(PartitionHeader, header).getvalue() + new_payload)


## writing back

def find_partition_offset(io, name: str) -> int:
    """ Rescan the headers of a seekable NVRAM file for a partition, independently of any parsed image. """
    io.seek(0)
    offset = 0
    while True:
        raw = io.read(HEADER_SIZE)
        if not raw:
            raise PartitionNotFound('could not find "{}" partition'.format(name))
        if len(raw) != HEADER_SIZE:
            raise CorruptHeader('short read of {} header bytes'.format(len(raw)), offset=offset)

        header = restruct.parse(PartitionHeader, raw)
        if name_matches(header.name, name):
            return offset
        if header.length == 0:
            raise CorruptPartition('partition length is zero', partition=decode_name(header.name), offset=offset)
        offset += header.length * BLOCK_SIZE
        io.seek(offset)

def write_partition(io, update: PartitionUpdate) -> int:
    offset = find_partition_offset(io, update.name)
    io.seek(offset)
    written = io.write(update.data)
    if written is not None and written != len(update.data):
        raise ShortWrite(
            'only wrote {} of {} bytes'.format(written, len(update.data)),
            partition=update.name, offset=offset
        )
    io.flush()
    logger.info('wrote %d bytes of "%s" partition at offset 0x%x', len(update.data), update.name, offset)
    return offset
