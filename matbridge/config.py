import os
import re
import shutil
import sys
from typing import Optional

from matbridge.utils import clamp_int, to_bool

# ========= Static config =========
# 64K is enough to hold the printed output of most statements
DEFAULT_OUTPUT_BUFFER_SIZE = 64 * 1024
MAX_OUTPUT_BUFFER_SIZE = 64 * 1024 * 1024

# engine namelengthmax
MAX_IDENTIFIER_LENGTH = 63
TEMP_NAME_PREFIX = "jx"

IDENTIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
DOTTED_IDENTIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)*$")

# sys.platform prefix -> (arch dirs under <root>/bin, libeng, libmx)
PLATFORM_LIBS = {
    "linux": (("glnxa64",), "libeng.so", "libmx.so"),
    "darwin": (("maca64", "maci64"), "libeng.dylib", "libmx.dylib"),
    "win32": (("win64",), "libeng.dll", "libmx.dll"),
}

# ========= Runtime Configuration =========
class EngineConfig:
    def __init__(self):
        self.MATLAB_ROOT: Optional[str] = None
        self.LIBENG_PATH: Optional[str] = None
        self.LIBMX_PATH: Optional[str] = None
        self.STARTCMD: Optional[str] = None
        self.BUFFER_SIZE: int = DEFAULT_OUTPUT_BUFFER_SIZE
        self.HIDE_WINDOW: bool = True
        self.LOG_DIR: str = ""

    def load_from_env(self):
        self.MATLAB_ROOT = os.environ.get("MATLAB_ROOT", self.MATLAB_ROOT)
        self.LIBENG_PATH = os.environ.get("MATBRIDGE_LIBENG", self.LIBENG_PATH)
        self.LIBMX_PATH = os.environ.get("MATBRIDGE_LIBMX", self.LIBMX_PATH)
        self.STARTCMD = os.environ.get("MATBRIDGE_STARTCMD", self.STARTCMD)
        self.LOG_DIR = os.environ.get("MATBRIDGE_LOG_DIR", self.LOG_DIR)

        buffer_env = os.environ.get("MATBRIDGE_BUFFER_SIZE")
        if buffer_env is not None:
            self.BUFFER_SIZE = clamp_int(buffer_env, DEFAULT_OUTPUT_BUFFER_SIZE, 0, MAX_OUTPUT_BUFFER_SIZE)

        hide_env = os.environ.get("MATBRIDGE_HIDE_WINDOW")
        if hide_env is not None:
            self.HIDE_WINDOW = to_bool(hide_env, self.HIDE_WINDOW)

    def platform_libs(self):
        for prefix, libs in PLATFORM_LIBS.items():
            if sys.platform.startswith(prefix):
                return libs
        raise OSError(f"unsupported platform: {sys.platform}")

    def matlab_root(self) -> Optional[str]:
        if self.MATLAB_ROOT:
            return os.path.abspath(os.path.expanduser(self.MATLAB_ROOT))
        exe = shutil.which("matlab")
        if not exe:
            return None
        # <root>/bin/matlab
        return os.path.dirname(os.path.dirname(os.path.realpath(exe)))

    def library_path(self, which: str) -> Optional[str]:
        explicit = self.LIBENG_PATH if which == "eng" else self.LIBMX_PATH
        if explicit:
            return explicit
        root = self.matlab_root()
        if not root:
            return None
        arch_dirs, libeng, libmx = self.platform_libs()
        filename = libeng if which == "eng" else libmx
        for arch in arch_dirs:
            candidate = os.path.join(root, "bin", arch, filename)
            if os.path.exists(candidate):
                return candidate
        return os.path.join(root, "bin", arch_dirs[0], filename)

    def startcmd(self) -> Optional[str]:
        if self.STARTCMD is not None:
            return self.STARTCMD
        if sys.platform.startswith("win32"):
            # engOpen(NULL) starts the registered COM server
            return None
        root = self.matlab_root()
        matlab = os.path.join(root, "bin", "matlab") if root else "matlab"
        return f"{matlab} -nosplash"

# Global instance
config = EngineConfig()
config.load_from_env()
