import enum


class ErrorKind(enum.IntEnum):
    """
    单张图像处理失败的错误类别

    数值即错误信息后面打印的错误码，例如:
    "sift: err: Output file name too long. (1)"
    """
    OVERFLOW = 1
    OUT_OF_MEMORY = 2
    IO = 4
    FORMAT = 101
    ENGINE = 201


class SiftError(Exception):
    """所有会中止当前图像处理的错误的基类"""
    kind = None

    @property
    def code(self):
        return int(self.kind)


class NameTooLongError(SiftError):
    """派生出的名称（基本名或输出文件名）超过 MAX_NAME_LENGTH"""
    kind = ErrorKind.OVERFLOW


class OutOfMemoryError(SiftError):
    kind = ErrorKind.OUT_OF_MEMORY


class SiftIOError(SiftError):
    """文件无法打开、读取或写入"""
    kind = ErrorKind.IO


class ImageFormatError(SiftError):
    """输入图像的头部或数据损坏"""
    kind = ErrorKind.FORMAT


class EngineError(SiftError):
    """检测引擎失败（组数用尽不算失败）"""
    kind = ErrorKind.ENGINE
