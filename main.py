import sys
import logging
import argparse

from src.util.file_meta import DEFAULT_SINKS, Protocol, SinkRole
from src.util.image_loader import expand_inputs
from src.Driver.sift_driver import SiftDriver

DRIVER_VERSION = "alpha-1"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(verbose=0, log_file=None):
    """
    配置根日志记录器

    verbose: 0 -> WARNING, 1 -> INFO, 2 及以上 -> DEBUG
    """
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers
    )
    logging.getLogger().setLevel(level)

    # 极值检测日志很多，只在 -vvv 时显示
    logging.getLogger('src.ScaleSpace.find_extrema_pixel').setLevel(logging.DEBUG if verbose >= 3 else logging.ERROR)


def non_negative_int(text):
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be a non-negative integer")
    return value


def positive_int(text):
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return value


def non_negative_float(text):
    value = float(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be a non-negative float")
    return value


def build_parser():
    parser = argparse.ArgumentParser(
        prog="sift",
        description="Extract SIFT frames and descriptors from grayscale images.",
        epilog="Sink options take an optional [ascii://|bin://][PATTERN] argument, "
               "given as --frames=ARG; '%%' in PATTERN is replaced by the image basename."
    )
    parser.add_argument('files', nargs='*', help='input images or folders of images')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='be verbose (repeat for more)')
    parser.add_argument('--version', action='version', version=f'sift: driver version: {DRIVER_VERSION}')

    sinks = parser.add_argument_group('output sinks')
    sinks.add_argument('--frames', nargs='?', const='', default=None, metavar='ARG',
                       help="frames file (default active, '%%.frame')")
    sinks.add_argument('--descriptors', nargs='?', const='', default=None, metavar='ARG',
                       help="descriptors file ('%%.descr')")
    sinks.add_argument('--meta', nargs='?', const='', default=None, metavar='ARG',
                       help="meta file, ascii only ('%%.meta')")
    sinks.add_argument('--gss', nargs='?', const='', default=None, metavar='ARG',
                       help="Gaussian scale space images ('%%.pgm')")

    algorithm = parser.add_argument_group('algorithm')
    algorithm.add_argument('-O', '--octaves', type=non_negative_int, default=-1, help='number of octaves')
    algorithm.add_argument('-S', '--levels', type=positive_int, default=3, help='number of levels per octave')
    algorithm.add_argument('--first-octave', type=int, default=-1, help='index of the first octave')
    algorithm.add_argument('--edge-thresh', '--edges-tresh', dest='edge_thresh', type=non_negative_float,
                           default=None, help='edge threshold')
    algorithm.add_argument('--peak-thresh', '--peaks-tresh', dest='peak_thresh', type=non_negative_float,
                           default=None, help='peak threshold')

    parser.add_argument('--log-file', default=None, help='also write the log to this file')
    return parser


def parse_sinks(parser, args):
    """把输出选项应用到默认输出配置上"""
    sinks = dict(DEFAULT_SINKS)
    for role in SinkRole:
        optarg = getattr(args, role.value)
        if optarg is None:
            continue
        try:
            sinks[role] = sinks[role].parse(optarg)
        except ValueError as e:
            parser.error(f"the argument of '--{role.value}' is invalid: {e}")
    if sinks[SinkRole.META].protocol is not Protocol.ASCII:
        parser.error("meta file supports only ASCII protocol")
    return sinks


def main(argv=None):
    """
    入口: 解析选项，逐张处理图像

    返回进程退出码，全部图像处理成功时为 0。
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    sinks = parse_sinks(parser, args)

    setup_logging(args.verbose, args.log_file)
    logger = logging.getLogger('sift')

    for role, meta in sinks.items():
        logger.debug(f"sift: {role.value:<12}: active={int(meta.active)} "
                     f"pattern={meta.pattern:<10} protocol={meta.protocol.value:<6}")

    filter_options = {
        'num_octaves': args.octaves,
        'num_levels': args.levels,
        'first_octave': args.first_octave,
    }
    if args.edge_thresh is not None:
        filter_options['edge_threshold'] = args.edge_thresh
    if args.peak_thresh is not None:
        filter_options['peak_threshold'] = args.peak_thresh

    driver = SiftDriver(sinks=sinks, filter_options=filter_options)
    return driver.run(expand_inputs(args.files))


if __name__ == "__main__":
    sys.exit(main())
