import enum
import logging
from dataclasses import dataclass, replace

import numpy as np

from src.util.errors import NameTooLongError, SiftIOError

logger = logging.getLogger(__name__)

# 文件名（基本名或输出文件名）长度上限，不含
MAX_NAME_LENGTH = 1024


class Protocol(enum.Enum):
    ASCII = "ascii"
    BINARY = "bin"


class SinkRole(enum.Enum):
    FRAMES = "frames"
    DESCRIPTORS = "descriptors"
    META = "meta"
    GSS = "gss"


@dataclass(frozen=True)
class FileMeta:
    """
    单个输出的配置

    参数:
    active (bool): 是否写出该输出
    pattern (str): 文件名模板，'%' 替换为图像基本名
    protocol (Protocol): 文本 (ascii) 或大端二进制记录
    """
    active: bool
    pattern: str
    protocol: Protocol = Protocol.ASCII

    def parse(self, optarg):
        """
        应用命令行选项参数，返回更新后的配置

        参数格式为 [PROTOCOL://][PATTERN]。只要给出选项就会激活该输出；
        模板为空时保留原模板。

        异常:
        ValueError: 未知的协议前缀
        """
        protocol, pattern = parse_protocol(optarg or "")
        updated = replace(self, active=True)
        if protocol is not None:
            updated = replace(updated, protocol=protocol)
        if pattern:
            if len(pattern) >= MAX_NAME_LENGTH:
                raise ValueError("pattern too long")
            updated = replace(updated, pattern=pattern)
        return updated


DEFAULT_SINKS = {
    SinkRole.FRAMES: FileMeta(True, "%.frame"),
    SinkRole.DESCRIPTORS: FileMeta(False, "%.descr"),
    SinkRole.META: FileMeta(False, "%.meta"),
    SinkRole.GSS: FileMeta(False, "%.pgm"),
}


def parse_protocol(text):
    """
    把选项参数拆成 (protocol, 剩余部分)

    参数没有 "xxx://" 前缀时 protocol 为 None
    """
    head, sep, rest = text.partition("://")
    if not sep:
        return None, text
    for protocol in Protocol:
        if head == protocol.value:
            return protocol, rest
    raise ValueError(f"unknown protocol '{head}'")


def replace_wildcard(pattern, value, wildcard="%", escape="\\"):
    """
    把模板中所有未转义的通配符替换为 value

    转义字符使其后一个字符按字面处理，所以 "\\%" 得到 "%"
    """
    out = []
    escaped = False
    for ch in pattern:
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == escape:
            escaped = True
        elif ch == wildcard:
            out.append(value)
        else:
            out.append(ch)
    if escaped:
        out.append(escape)
    return "".join(out)


def get_basename(path, max_length=MAX_NAME_LENGTH):
    """
    去掉路径中的目录和最后一个扩展名

    异常:
    NameTooLongError: 结果超出 max_length
    """
    name = path.replace("\\", "/").rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot > 0:
        name = name[:dot]
    if len(name) >= max_length:
        raise NameTooLongError(f"Basename of '{path}' is too long")
    return name


class Sink:
    """
    单张图像的一个输出句柄

    配置 (FileMeta) 在图像之间共享，打开的文件不共享。
    关闭可重复调用，未激活的输出关闭时什么也不做。
    """

    def __init__(self, role, meta):
        self.role = role
        self.meta = meta
        self.name = ""
        self.file = None

    @property
    def active(self):
        return self.meta.active

    @property
    def binary(self):
        return self.meta.protocol is Protocol.BINARY

    @property
    def is_open(self):
        return self.file is not None

    def open(self, basename, binary=None):
        """
        由基本名生成文件名并以写方式打开

        参数:
        basename (str): 替换模板中通配符的值
        binary (bool): 强制文件模式，默认按输出协议
        """
        if not self.active:
            return
        self.close()
        name = replace_wildcard(self.meta.pattern, basename)
        if len(name) >= MAX_NAME_LENGTH:
            raise NameTooLongError("Output file name too long.")
        self.name = name
        if binary is None:
            binary = self.binary
        try:
            self.file = open(name, "wb" if binary else "w")
        except OSError as e:
            raise SiftIOError(f"Could not open '{name}' for writing.") from e

    def close(self):
        if self.file is None:
            return
        try:
            self.file.close()
        except OSError as e:
            raise SiftIOError(f"Could not write to '{self.name}'.") from e
        finally:
            self.file = None

    def write(self, data):
        try:
            self.file.write(data)
        except OSError as e:
            raise SiftIOError(f"Could not write to '{self.name}'.") from e

    def write_frame(self, keypoint, angle):
        """追加一条 (x, y, scale, orientation) 记录"""
        if self.binary:
            self.write(np.array([keypoint.x, keypoint.y, keypoint.scale, angle], dtype=">f8").tobytes())
        else:
            self.write("%g %g %g %g\n" % (keypoint.x, keypoint.y, keypoint.scale, angle))

    def write_descriptor(self, descriptor):
        """追加一条描述符记录"""
        if self.binary:
            self.write(np.asarray(descriptor, dtype=">f8").tobytes())
        else:
            self.write("".join("%g " % value for value in descriptor) + "\n")


class SinkTable:
    """
    单张图像的四个输出，按 SinkRole 索引

    作为上下文管理器使用: 退出时无论成败都关闭所有输出
    """
    # 每张图像打开输出的顺序；GSS 按每组每层单独打开
    OUTPUT_ORDER = (SinkRole.DESCRIPTORS, SinkRole.FRAMES, SinkRole.META)

    def __init__(self, configs):
        self._sinks = {role: Sink(role, configs[role]) for role in SinkRole}

    def __getitem__(self, role):
        return self._sinks[role]

    def __iter__(self):
        return iter(self._sinks.values())

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.close_all()
        except SiftIOError as close_error:
            if exc is None:
                raise
            # 上报的是正在传播的那个错误
            logger.error(f"sift: err: {close_error} ({close_error.code})")
        return False

    def open_outputs(self, basename):
        for role in self.OUTPUT_ORDER:
            sink = self._sinks[role]
            sink.open(basename)
            if sink.is_open:
                logger.debug(f"sift: writing {role.value} to '{sink.name}'")

    def close_all(self):
        first_error = None
        for sink in self._sinks.values():
            try:
                sink.close()
            except SiftIOError as e:
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
