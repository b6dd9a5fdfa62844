#!/usr/bin/env python3
# SPDX-License-Identifier: MIT

import argparse
import glob
import logging
import os
import sys
import restruct

import nvram
from nvram import NVRAMImage, NVRAMError, PartitionNotFound, EntryNotFound, NAME_VALUE_PARTITIONS
from nvram_vpd import dump_vpd
from nvram_logs import dump_errlog, dump_eventscan, RTASEventFormatter


logger = logging.getLogger(__name__)

DEFAULT_NVRAM_SIZE = 1024 * 1024
NVRAM_FILENAMES = ('/dev/nvram', '/dev/misc/nvram')
DEVICE_TREE = '/proc/device-tree'

NVRAMSize = restruct.UInt(32, order='be')


def resolve_of_node(parent, node):
    """
    Resolve a possibly abbreviated Open Firmware node name under parent.

    With a single child "foo@0", all of "foo@0", "foo" and "@0" name that child.
    """
    if os.path.exists(os.path.join(parent, node)):
        return node

    if node.startswith('@'):
        pattern = '*' + glob.escape(node) + '*'
    else:
        pattern = glob.escape(node) + '@*'
    matches = glob.glob(os.path.join(glob.escape(parent), pattern))
    if len(matches) > 1:
        logger.error('Ambiguous node name "%s"', node)
        return None
    if not matches:
        return None
    return os.path.basename(matches[0])

def resolve_of_path(ofpath, root=DEVICE_TREE):
    resolved = root
    for node in ofpath.strip('/').split('/'):
        child = resolve_of_node(resolved, node)
        if child is None:
            return None
        resolved = os.path.join(resolved, child)
    return resolved

def of_nvram_size(root=DEVICE_TREE):
    """ Size of NVRAM according to the device tree, or DEFAULT_NVRAM_SIZE if it can't be found. """
    path = os.path.join(root, 'nvram', '#bytes')
    if not os.path.exists(path):
        alias_path = os.path.join(root, 'aliases', 'nvram')
        try:
            with open(alias_path, 'rb') as f:
                alias = f.read().rstrip(b'\x00').decode('ascii')
        except (OSError, UnicodeDecodeError):
            logger.error('Could not determine nvram size from %s', alias_path)
            return DEFAULT_NVRAM_SIZE

        path = resolve_of_path(alias + '/#bytes', root)
        if path is None:
            logger.warning('cannot open nvram node "%s/#bytes" in device tree', alias)
            return DEFAULT_NVRAM_SIZE

    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except OSError as e:
        logger.warning('cannot open nvram node "%s" in device tree: %s', path, e.strerror)
        return DEFAULT_NVRAM_SIZE

    if len(raw) != 4:
        logger.error('got odd size for nvram node in device tree')
        return DEFAULT_NVRAM_SIZE
    return restruct.parse(NVRAMSize, raw)


def open_nvram(filename=None, writable=False):
    mode = 'r+b' if writable else 'rb'
    if filename:
        return open(filename, mode)

    errors = []
    for filename in NVRAM_FILENAMES:
        try:
            return open(filename, mode)
        except OSError as e:
            errors.append(e)
    raise errors[-1]

def read_nvram(f, size):
    data = bytearray()
    while len(data) < size:
        chunk = f.read(min(512, size - len(data)))
        if not chunk:
            break
        data.extend(chunk)

    if size == DEFAULT_NVRAM_SIZE:
        # guessed size, trust what the device gave us
        size = len(data)
    if len(data) < size:
        logger.warning('expected %d bytes, but only read %d!', size, len(data))
        data.extend(bytes(size - len(data)))

    logger.info('NVRAM size %d bytes', size)
    return data


def print_config_part(image, pname):
    partition = image.find(name=pname)
    if partition is None:
        return False

    print('"{}" Partition'.format(pname))
    print('-' * (len(pname) + 15))
    for entry in image.config(partition):
        print('{}={}'.format(entry.name, entry.value.decode('latin-1')))
    print()
    return True

def print_config(image, var, pname):
    if not var:
        if pname is None:
            for name in NAME_VALUE_PARTITIONS:
                print_config_part(image, name)
        elif pname not in NAME_VALUE_PARTITIONS or not print_config_part(image, pname):
            raise PartitionNotFound('There is no Open Firmware "{}" partition!'.format(pname))
        return

    if pname is None:
        partitions = NAME_VALUE_PARTITIONS
    else:
        if image.find(name=pname) is None:
            raise PartitionNotFound('There is no Open Firmware "{}" partition.'.format(pname))
        partitions = (pname,)

    found = False
    for _, value in nvram.lookup_all(image, var, partitions):
        print(value)
        found = True
    if not found:
        raise EntryNotFound('config var {} not found'.format(var), partition=pname)

def update_config(image, f, assignment, pname):
    update = nvram.update_config(image, pname, assignment)
    nvram.write_partition(f, update)
    image.replace(update)

def dump_partition(image, name):
    partition = image.find(name=name)
    if partition is None:
        raise PartitionNotFound('there is no {} partition!'.format(name))
    print(nvram.hexdump(partition.raw))


def main(argv=None):
    parser = argparse.ArgumentParser(prog='nvram', description='print and modify data stored in powerpc NVRAM')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='be (more) verbose')
    parser.add_argument('--print-config', nargs='?', const='', metavar='VAR',
        help='print value of a config variable, or print all variables in the specified (or all) partitions')
    parser.add_argument('--update-config', metavar='VAR=VALUE',
        help='update the config variable in the specified partition (default: common)')
    parser.add_argument('-p', '--partition',
        help='specify a partition; used by --update-config, optional with --print-config')
    parser.add_argument('-V', '--print-vpd', action='store_true', help='print VPD')
    parser.add_argument('--print-all-vpd', action='store_true', help='print VPD, including vendor specific data')
    parser.add_argument('--print-err-log', action='store_true', help='print checkstop error log')
    parser.add_argument('--print-event-scan', action='store_true', help='print event scan log')
    parser.add_argument('--partitions', action='store_true', help='print NVRAM partition header info')
    parser.add_argument('--dump', metavar='NAME', help='raw dump of partition (use --partitions to see names)')
    parser.add_argument('--nvram-file', metavar='PATH', help='alternate nvram data file (default: /dev/nvram)')
    parser.add_argument('--nvram-size', type=int, metavar='SIZE', help='size of nvram data (for repair operations)')

    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        parser.print_help()
        return 1
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr, format=parser.prog + ': %(levelname)s: %(message)s',
        level=[logging.WARNING, logging.INFO, logging.DEBUG][min(args.verbose, 2)],
    )

    try:
        f = open_nvram(args.nvram_file, writable=bool(args.update_config))
    except OSError as e:
        logger.error('cannot open "%s": %s', e.filename, e.strerror)
        return 1

    with f:
        file_size = os.fstat(f.fileno()).st_size
        if args.nvram_size:
            size = args.nvram_size
            if file_size and file_size != size:
                logger.warning('specified nvram size %d does not match file size %d!', size, file_size)
        else:
            size = file_size or of_nvram_size()
        image = NVRAMImage(read_nvram(f, size))

        actions = []
        if args.partitions:
            actions.append(lambda: print(nvram.format_table(image.partitions)))
        if args.update_config:
            actions.append(lambda: update_config(image, f, args.update_config, args.partition or 'common'))
        if args.print_config is not None:
            actions.append(lambda: print_config(image, args.print_config, args.partition))
        if args.print_vpd or args.print_all_vpd:
            actions.append(lambda: print(dump_vpd(image, show_all=args.print_all_vpd)))
        if args.print_err_log:
            actions.append(lambda: print(dump_errlog(image)))
        if args.print_event_scan:
            actions.append(lambda: print(dump_eventscan(image, RTASEventFormatter())))
        if args.dump:
            actions.append(lambda: dump_partition(image, args.dump))

        ret = 0
        for action in actions:
            try:
                action()
            except (NVRAMError, OSError) as e:
                logger.error('%s', e)
                ret = 1
    return ret


if __name__ == '__main__':
    sys.exit(main())
