# SPDX-License-Identifier: MIT
# Greetings to:
# - PCI Local Bus Specification, VPD resource data format
# - IBM RS/6000 VPD keywords

import collections
import logging
import restruct

from nvram import PartitionNotFound, UnknownDescriptor, TruncatedData, Signature


logger = logging.getLogger(__name__)

IDENTIFIER_TAG = 0x82
END_TAG = 0x79

VPD_FIELD_LABELS = {
    'PN': 'Part Number',
    'EC': 'EC Level',
    'MN': 'Manufacture ID',
    'SN': 'Serial Number',
    'FN': 'FRU Number',
    'RL': 'ROM Level',
    'RM': 'Alterable ROM Level',
    'NA': 'Network Address',
    'DD': 'Device Driver Level',
    'DG': 'Diagnostic Level',
    'LL': 'Loadable Microcode Level',
    'VI': 'Vendor ID/Device ID',
    'FU': 'Function Number',
    'SI': 'Subsystem Vendor ID',
    'CC': 'Customer Card ID',
    'DS': 'Displayable Message',
    'YL': 'Location Code',
    'TM': 'Machine Type/Model',
    'SE': 'Machine Serial Number',
    'CD': 'Card ID',
    'PI': 'Processor ID',
}


class VPDResource(restruct.Struct, partials={'L'}):
    size: UInt(16, order='le') @ L.limit
    data: Sized(Data()) @ L

class VPDField(restruct.Struct, partials={'V'}):
    code:  Data(2)
    size:  UInt(8) @ V.limit
    value: Sized(Data()) @ V

VPDDescriptor = collections.namedtuple('VPDDescriptor', ('identifier', 'fields', 'offset'))


def read_resource(data, pos: int, name=None):
    """ Read a large resource (2-byte little-endian length + data) at pos; returns the data and the next position. """
    if pos + 2 > len(data):
        raise TruncatedData('resource length runs past end of data', partition=name, offset=pos)
    size = data[pos] | (data[pos + 1] << 8)
    if pos + 2 + size > len(data):
        raise TruncatedData('resource of {} bytes runs past end of data'.format(size), partition=name, offset=pos)
    resource = restruct.parse(VPDResource, bytes(data[pos:pos + 2 + size]))
    return resource.data, pos + 2 + size

def parse_fields(group: bytes, base: int, show_unmapped: bool, labels, name=None):
    fields = []
    pos = 0
    while pos < len(group):
        if pos + 3 > len(group) or pos + 3 + group[pos + 2] > len(group):
            raise TruncatedData('VPD field runs past end of keyword group', partition=name, offset=base + pos)
        field = restruct.parse(VPDField, group[pos:pos + 3 + group[pos + 2]])
        pos += 3 + field.size

        code = field.code.decode('ascii', errors='replace')
        label = labels.get(code)
        if label is None:
            if not show_unmapped:
                continue
            label = code
        fields.append((code, label, field.value))
    return fields

def decode_descriptor(data, pos: int, show_unmapped: bool, labels, name=None):
    identifier, pos = read_resource(data, pos + 1, name)
    fields = []
    while True:
        if pos >= len(data):
            raise TruncatedData('VPD descriptor has no end tag', partition=name, offset=pos)
        if data[pos] == END_TAG:
            break
        start = pos + 3
        group, pos = read_resource(data, pos + 1, name)
        fields.extend(parse_fields(group, start, show_unmapped, labels, name))
    # end tag, then checksum byte
    return identifier, fields, pos + 2

def decode_vpd(data, show_unmapped=False, labels=VPD_FIELD_LABELS, strict=False, name='ibm,vpd'):
    """
    Decode the VPD descriptors in a partition payload.

    Fields with a label in `labels` are reported with that label, others only with show_unmapped
    and then under their raw code. An unknown tag or a truncated record ends decoding with a
    warning, or raises with strict.
    """
    pos = 0
    while pos < len(data) and data[pos] != 0:
        if data[pos] != IDENTIFIER_TAG:
            error = UnknownDescriptor('found unknown descriptor byte 0x{:02x}'.format(data[pos]), partition=name, offset=pos)
            if strict:
                raise error
            logger.warning('%s', error)
            return

        offset = pos
        try:
            identifier, fields, pos = decode_descriptor(data, pos, show_unmapped, labels, name)
        except TruncatedData as e:
            if strict:
                raise
            logger.warning('%s', e)
            return
        yield VPDDescriptor(identifier.decode('ascii', errors='replace'), fields, offset)

def iter_vpd_fields(data, show_unmapped=False, labels=VPD_FIELD_LABELS, strict=False, name='ibm,vpd'):
    for descriptor in decode_vpd(data, show_unmapped, labels, strict, name):
        yield from descriptor.fields


def format_field_value(value: bytes) -> str:
    return value.split(b'\x00', maxsplit=1)[0].decode('ascii', errors='replace')

def dump_vpd(image, show_all=False, labels=VPD_FIELD_LABELS) -> str:
    partition = image.find(signature=Signature.HW, name='ibm,vpd')
    if partition is None:
        raise PartitionNotFound('there is no ibm,vpd partition')

    lines = []
    for descriptor in decode_vpd(partition.payload, show_unmapped=show_all, labels=labels, name=partition.name):
        lines.append(descriptor.identifier)
        for code, label, value in descriptor.fields:
            lines.append('\t{:<20} {}'.format(label, format_field_value(value)))
    return '\n'.join(lines)
