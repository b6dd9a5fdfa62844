import pytest

from nvram import NVRAMImage, Signature, PartitionNotFound, UnknownDescriptor, TruncatedData, make_partition
from nvram_vpd import decode_vpd, iter_vpd_fields, dump_vpd


def resource(tag, data):
    return bytes([tag]) + len(data).to_bytes(2, 'little') + data

def field(code, value):
    return code + bytes([len(value)]) + value


DISK_VPD = (
    resource(0x82, b'IBM DISK') +
    resource(0x90, field(b'PN', b'ABC123') + field(b'ZZ', b'vendor')) +
    resource(0x91, field(b'SN', b'0042\x00')) +
    b'\x79\x00'
)


def test_identifier_without_fields():
    descriptors = list(decode_vpd(b'\x82\x03\x00ABC\x79'))
    assert len(descriptors) == 1
    assert descriptors[0].identifier == 'ABC'
    assert descriptors[0].fields == []
    assert descriptors[0].offset == 0


def test_mapped_fields_only():
    descriptor, = decode_vpd(DISK_VPD + b'\x00' * 8)
    assert descriptor.identifier == 'IBM DISK'
    assert descriptor.fields == [
        ('PN', 'Part Number', b'ABC123'),
        ('SN', 'Serial Number', b'0042\x00'),
    ]


def test_unmapped_fields_shown_raw():
    fields = list(iter_vpd_fields(DISK_VPD, show_unmapped=True))
    assert ('ZZ', 'ZZ', b'vendor') in fields
    assert len(fields) == 3


def test_custom_labels():
    fields = list(iter_vpd_fields(DISK_VPD, labels={'ZZ': 'Vendor Data'}))
    assert fields == [('ZZ', 'Vendor Data', b'vendor')]


def test_multiple_descriptors():
    second = resource(0x82, b'IBM NIC') + resource(0x90, field(b'NA', b'0011')) + b'\x79\x00'
    descriptors = list(decode_vpd(DISK_VPD + second))
    assert [d.identifier for d in descriptors] == ['IBM DISK', 'IBM NIC']
    assert descriptors[1].offset == len(DISK_VPD)
    assert descriptors[1].fields == [('NA', 'Network Address', b'0011')]


def test_unknown_descriptor(caplog):
    data = b'\x82\x01\x00A\x79\x00\x55\x01\x02'
    descriptors = list(decode_vpd(data))
    assert [d.identifier for d in descriptors] == ['A']
    assert 'found unknown descriptor byte 0x55' in caplog.text

    with pytest.raises(UnknownDescriptor) as e:
        list(decode_vpd(data, strict=True))
    assert e.value.offset == 6


def test_truncated_resource(caplog):
    data = b'\x82\x32\x00ABC'
    assert list(decode_vpd(data)) == []
    assert 'runs past end of data' in caplog.text
    with pytest.raises(TruncatedData):
        list(decode_vpd(data, strict=True))


def test_truncated_field():
    data = resource(0x82, b'X') + resource(0x90, b'PN\x09ABC') + b'\x79\x00'
    with pytest.raises(TruncatedData):
        list(decode_vpd(data, strict=True))


def test_missing_end_tag():
    data = resource(0x82, b'X') + resource(0x90, field(b'PN', b'1'))
    with pytest.raises(TruncatedData):
        list(decode_vpd(data, strict=True))


def test_dump_vpd():
    image = NVRAMImage(
        make_partition(Signature.System, 'common') +
        make_partition(Signature.HW, 'ibm,vpd', DISK_VPD)
    )
    assert dump_vpd(image).splitlines() == [
        'IBM DISK',
        '\t{:<20} ABC123'.format('Part Number'),
        '\t{:<20} 0042'.format('Serial Number'),
    ]
    assert '\t{:<20} vendor'.format('ZZ') in dump_vpd(image, show_all=True).splitlines()


def test_dump_vpd_needs_hw_partition():
    image = NVRAMImage(make_partition(Signature.System, 'ibm,vpd', DISK_VPD))
    with pytest.raises(PartitionNotFound):
        dump_vpd(image)
