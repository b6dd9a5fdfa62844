# SPDX-License-Identifier: MIT
# Greetings to:
# - IBM RPA checkstop error log and event-scan log layout
# - librtasevent

import collections
import ctypes
import ctypes.util
import logging
import os
import tempfile
import restruct

from nvram import CorruptPartition, PartitionNotFound, TruncatedData, Signature, hexdump


logger = logging.getLogger(__name__)

MAX_CPUS = 128
MAX_EVENT_LOGS = 100
MAX_DUMP_LENGTH = 4096
RTASEVENT_PATH = '/usr/lib/librtasevent.so'

HalfWords = restruct.Arr(restruct.UInt(16, order='be'))
EventLogCount = restruct.UInt(32, order='be')

class EventLogHeader(restruct.Struct):
    flags: UInt(8)
    type:  UInt(8)
    start: UInt(16, order='be')

ErrlogRegion = collections.namedtuple('ErrlogRegion', ('label', 'start', 'end'))
LogSegment = collections.namedtuple('LogSegment', ('index', 'flags', 'type', 'start', 'end'))


## checkstop error log

class ErrlogSummary:
    """
    Header of an ibm,err-log partition.

    Register block locations are halfword indices into the payload, or None when the stored
    offset points outside the partition. `truncated` holds a TruncatedData error when the
    header itself runs past the end of the payload.
    """

    def __init__(self, halfwords: int):
        self.halfwords = halfwords
        self.checkstops = 0
        self.semaphore = 0
        self.sys_regs = None
        self.cpu_count = None
        self.cpu_regs = []
        self.memctrl_count = None
        self.memctrl_data = None
        self.ioctrl_count = None
        self.ioctrl_data = None
        self.truncated = None

    def regions(self):
        """ Byte ranges of the register blocks; each block runs up to the next one. """
        regions = []
        cpus = self.cpu_regs

        if self.sys_regs is not None and cpus and cpus[0] is not None and cpus[0] >= self.sys_regs:
            regions.append(ErrlogRegion('System Specific Registers', self.sys_regs * 2, cpus[0] * 2))

        bounds = cpus + [self.ioctrl_data]
        for cpu, start in enumerate(cpus):
            end = bounds[cpu + 1]
            if start is None or end is None or end < start:
                regions.append(ErrlogRegion('CPU {}'.format(cpu), None if start is None else start * 2, None))
            else:
                regions.append(ErrlogRegion('CPU {}'.format(cpu), start * 2, end * 2))
        return regions


def resolve_offset(words, index: int):
    # stored offsets are in bytes from the word before the next one
    target = index + words[index] // 2 + 1
    return target if target < len(words) else None

def decode_errlog(data, name='ibm,err-log') -> ErrlogSummary:
    words = restruct.parse(HalfWords, bytes(data[:len(data) & ~1]))
    if len(words) < 4:
        raise CorruptPartition('error log holds {} halfwords, need at least 4'.format(len(words)), partition=name)

    summary = ErrlogSummary(len(words))
    summary.checkstops = words[0] >> 8
    summary.semaphore = words[0] & 0xff
    summary.sys_regs = resolve_offset(words, 1)
    summary.cpu_count = words[2]

    index = 3
    for cpu in range(summary.cpu_count):
        if index >= len(words):
            break
        if cpu < MAX_CPUS:
            summary.cpu_regs.append(resolve_offset(words, index))
        index += 1

    if index + 4 > len(words):
        summary.truncated = TruncatedData(
            'error log header needs {} halfwords, partition holds {}'.format(index + 4, len(words)),
            partition=name
        )
        logger.warning('%s', summary.truncated)

    if index < len(words):
        summary.memctrl_count = words[index]
    if index + 1 < len(words):
        summary.memctrl_data = resolve_offset(words, index + 1)
    if index + 2 < len(words):
        summary.ioctrl_count = words[index + 2]
    if index + 3 < len(words):
        summary.ioctrl_data = resolve_offset(words, index + 3)
    return summary

def render_errlog(summary: ErrlogSummary, data) -> str:
    lines = []
    if summary.checkstops:
        lines.append('Checkstops detected: {}'.format(summary.checkstops))
    else:
        lines.append('No checkstops have been detected.')
    lines.append('CPUS: {}'.format(summary.cpu_count))
    if summary.memctrl_count is not None:
        lines.append('Memory Controllers: {}'.format(summary.memctrl_count))
    if summary.ioctrl_count is not None:
        lines.append('I/O Controllers: {}'.format(summary.ioctrl_count))

    for region in summary.regions():
        if region.label.startswith('CPU'):
            length = None if region.end is None else region.end - region.start
            lines.append('{} Register Data (len={}, offset={})'.format(
                region.label,
                'unknown' if length is None else '{:x}'.format(length),
                'invalid' if region.start is None else '{:x}'.format(region.start),
            ))
        else:
            lines.append(region.label)
            length = region.end - region.start
        if length is not None and length < MAX_DUMP_LENGTH:
            lines.append(hexdump(data[region.start:region.end]))
    return '\n'.join(lines)

def dump_errlog(image) -> str:
    partition = image.find(signature=Signature.SP, name='ibm,err-log')
    if partition is None:
        raise PartitionNotFound('there is no ibm,err-log partition')
    payload = partition.payload
    return render_errlog(decode_errlog(payload, name=partition.name), payload)


## event-scan log

class RTASEventFormatter:
    """
    Pretty-prints RTAS event records through librtasevent, loaded on first use.

    format() returns None when the library is missing or does not recognize the record.
    """

    def __init__(self, path=None):
        self.path = path
        self._lib = None
        self._libc = None
        self._loaded = False

    def _load(self):
        if self._loaded:
            return self._lib is not None
        self._loaded = True

        path = self.path or ctypes.util.find_library('rtasevent') or RTASEVENT_PATH
        try:
            lib = ctypes.CDLL(path)
            libc = ctypes.CDLL(ctypes.util.find_library('c'))
            lib.parse_rtas_event.argtypes = [ctypes.c_char_p, ctypes.c_int]
            lib.parse_rtas_event.restype = ctypes.c_void_p
            lib.rtas_print_event.argtypes = [ctypes.c_void_p, ctypes.c_void_p, ctypes.c_int]
            lib.rtas_print_event.restype = ctypes.c_int
            lib.cleanup_rtas_event.argtypes = [ctypes.c_void_p]
            lib.cleanup_rtas_event.restype = ctypes.c_int
            libc.fdopen.argtypes = [ctypes.c_int, ctypes.c_char_p]
            libc.fdopen.restype = ctypes.c_void_p
            libc.fclose.argtypes = [ctypes.c_void_p]
        except (OSError, AttributeError) as e:
            logger.debug('librtasevent not available: %s', e)
            return False

        self._lib = lib
        self._libc = libc
        return True

    def format(self, data):
        if not data or not self._load():
            return None

        data = bytes(data)
        event = self._lib.parse_rtas_event(data, len(data))
        if not event:
            return None
        try:
            with tempfile.TemporaryFile() as f:
                fd = os.dup(f.fileno())
                fp = self._libc.fdopen(fd, b'w')
                if not fp:
                    os.close(fd)
                    return None
                self._lib.rtas_print_event(fp, event, 0)
                self._libc.fclose(fp)
                f.seek(0)
                return f.read().decode('utf-8', errors='replace')
        finally:
            self._lib.cleanup_rtas_event(event)


def decode_eventscan(data, name='ibm,es-logs', limit=MAX_EVENT_LOGS):
    """
    Decode the log table of an ibm,es-logs partition into one LogSegment per log.

    The declared log count is capped at `limit` and at the space the partition has for headers.
    Byte ranges are relative to the payload and never extend past it.
    """
    words = len(data) // 4
    if words < 1:
        raise CorruptPartition('event-scan log has no log count', partition=name)

    count = restruct.parse(EventLogCount, bytes(data[:4]))
    if count > limit:
        count = limit
        logger.warning('partition "%s": limiting to %d log entries (program limit)', name, count)
    if count > words - 1:
        count = words - 1
        logger.warning('partition "%s": limiting to %d log entries (partition limit)', name, count)

    headers = restruct.parse(restruct.Arr(EventLogHeader, count=count), bytes(data[4:4 + count * 4])) if count else []
    end_of_logs = words * 4

    segments = []
    for i, header in enumerate(headers):
        start = header.start
        end = headers[i + 1].start if i + 1 < len(headers) else end_of_logs
        if start > end_of_logs or end > end_of_logs or end < start:
            logger.warning('partition "%s": log %d range 0x%x-0x%x out of bounds, clamping', name, i, start, end)
            start = min(start, end_of_logs)
            end = min(max(end, start), end_of_logs)
        segments.append(LogSegment(i, header.flags, header.type, start, end))
    return segments

def render_eventscan(data, formatter=None, name='ibm,es-logs') -> str:
    segments = decode_eventscan(data, name=name)
    lines = ['Number of Logs: {}'.format(restruct.parse(EventLogCount, bytes(data[:4])))]
    for segment in segments:
        lines.append('Log Entry {}:  flags: 0x{:02x}  type: 0x{:02x}'.format(segment.index, segment.flags, segment.type))
        record = data[segment.start:segment.end]
        text = formatter.format(record) if formatter else None
        if text is None:
            lines.append('==== Log {} ===='.format(segment.index))
            lines.append(hexdump(record))
        else:
            lines.append(text.rstrip('\n'))
    return '\n'.join(lines)

def dump_eventscan(image, formatter=None) -> str:
    partition = image.find(signature=Signature.SP, name='ibm,es-logs')
    if partition is None:
        raise PartitionNotFound('there is no ibm,es-logs partition')
    return render_eventscan(partition.payload, formatter, name=partition.name)
