"""Helpers for strings, memory sizes, file names and jail file handling."""

from __future__ import annotations

import logging
import os
import random
import re
import stat
from dataclasses import dataclass
from enum import IntEnum

logger = logging.getLogger(__name__)

VERSION = "4.0.4"

VPL_EXECUTION = "vpl_execution"
VPL_WEXECUTION = "vpl_wexecution"
VPL_WEBEXECUTION = "vpl_webexecution"
VPL_WEBCOOKIE = "VPL_web"
VPL_SETWEBCOOKIE = "Set-Cookie: " + VPL_WEBCOOKIE + "="
VPL_CLEANWEBCOOKIE = VPL_SETWEBCOOKIE + "n; Max-Age=-1\r\n"
VPL_IWASHERECOOKIE = "VPL_Iwh"
VPL_SETIWASHERECOOKIE = (
    "Set-Cookie: " + VPL_IWASHERECOOKIE + "=y; Path=/; SameSite=none; Secure\r\n"
)
VPL_LOCALREDIRECT = "Location: /\r\n"
VPL_LOCALSERVERADDRESSFILE = ".vpl_localserveraddress"

FILENAME_SIZE_LIMIT = 128
PATH_SIZE_LIMIT = 256

INT_MAX = 2**31 - 1
LLONG_MAX = 2**63 - 1
LLONG_MIN = -(2**63)


class HttpStatus(IntEnum):
    """HTTP status codes the server reports."""

    BAD_REQUEST = 400
    REQUEST_TIMEOUT = 408
    REQUEST_ENTITY_TOO_LARGE = 413
    INTERNAL_SERVER_ERROR = 500


class HttpError(Exception):
    """An error that is answered with an HTTP status code."""

    def __init__(self, code: HttpStatus, message: str, detail: str = "") -> None:
        super().__init__(f"{message}: {detail}" if detail else message)
        self.code = code
        self.message = message
        self.detail = detail


class ExitStatus(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    INTERNAL_ERROR = 1
    NEUTRAL = 2
    HTTP_ERROR = 3
    WEBSOCKET_ERROR = 4


@dataclass
class ExecutionLimits:
    """Resource limits for one execution; sizes are in bytes."""

    maxtime: int = 0
    maxfilesize: int = 0
    maxmemory: int = 0
    maxprocesses: int = 0

    def describe(self, label: str) -> str:
        """Return (and log at debug level) a readable summary of the limits."""
        text = (
            f"{label}: maxtime: {self.maxtime} sec, "
            f"maxfilesize: {int(self.maxfilesize / 1024)} Kb, "
            f"maxmemory {int(self.maxmemory / 1024)} Kb, "
            f"maxprocesses: {self.maxprocesses}"
        )
        logger.debug("%s", text)
        return text


def get_line(text: str, offset: int) -> tuple[str, int]:
    """Return the LF-ended line starting at offset and the next line's offset."""
    if len(text) <= offset:
        return "", offset
    end = text.find("\n", offset)
    if end == -1:
        return text[offset:], len(text)
    line = text[offset:end]
    if line.endswith("\r"):
        line = line[:-1]
    return line, end + 1


def random_int() -> int:
    """Return a non-negative random integer mixing OS entropy and the PRNG."""
    try:
        value = int.from_bytes(os.urandom(4), "little", signed=True)
    except OSError:
        value = random.randint(0, INT_MAX)
    return abs(value + random.randint(0, INT_MAX))


def trim_and_remove_quotes(text: str) -> str:
    """Strip surrounding spaces and one pair of matching quotes."""
    text = text.strip(" ")
    if len(text) > 1 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def get_process_name(pid: int) -> tuple[str, str]:
    """Return (name, executable path) of a process, empty when unknown."""
    try:
        exe_path = os.readlink(f"/proc/{pid}/exe")
    except OSError:
        exe_path = ""
    name = read_file(f"/proc/{pid}/comm", False).decode("utf-8", errors="replace")
    return name, exe_path


def process_exists(pid: int) -> bool:
    """Return True if a signal could be sent to the process."""
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def _stat_mode(path: str, follow: bool) -> int | None:
    try:
        return (os.stat(path) if follow else os.lstat(path)).st_mode
    except OSError:
        return None


def file_exists(path: str, follow_link: bool = False) -> bool:
    """Return True if path is a regular file."""
    mode = _stat_mode(path, follow_link)
    return mode is not None and stat.S_ISREG(mode)


def dir_exists(path: str) -> bool:
    """Return True if path is a directory, not following symbolic links."""
    mode = _stat_mode(path, False)
    return mode is not None and stat.S_ISDIR(mode)


def dir_exists_following_symlink(path: str) -> bool:
    """Return True if path is a directory, following symbolic links."""
    mode = _stat_mode(path, True)
    return mode is not None and stat.S_ISDIR(mode)


_LEADING_INT = re.compile(r"[ \t\n\r\f\v]*([+-]?[0-9]+)")


def atol(text: str) -> int:
    """Parse a leading integer the way atoll does; 0 when there is none."""
    match = _LEADING_INT.match(text)
    if not match:
        return 0
    return max(LLONG_MIN, min(LLONG_MAX, int(match.group(1))))


def atoi(text: str) -> int:
    """Parse a leading integer, saturating at the largest 32-bit int."""
    return min(atol(text), INT_MAX)


def mem_abbreviation(abbreviation: str) -> int:
    """Return the multiplier for a K, M or G suffix (case-insensitive)."""
    if not abbreviation:
        return 1
    return {"k": 1024, "m": 1024**2, "g": 1024**3}.get(abbreviation[0].lower(), 1)


_MEM_SIZE = re.compile(r"^[ \t]*([0-9]+)[ \t]*([GgMmKk]?)")


def mem_size_to_bytes(text: str) -> int:
    """Convert a size such as '64 M' to bytes; 0 when unparsable."""
    match = _MEM_SIZE.search(text)
    if not match:
        return 0
    return atol(match.group(1)) * mem_abbreviation(match.group(2))


def mem_size_to_bytes_int(text: str) -> int:
    """Like mem_size_to_bytes, but out-of-range or non-positive gives INT_MAX."""
    value = mem_size_to_bytes(text)
    if value > INT_MAX or value <= 0:
        return INT_MAX
    return value


def fix_mem_size(size: int) -> int:
    """Map a non-positive memory size to 'unlimited'."""
    return LLONG_MAX if size <= 0 else size


def get_command(argv: list[str], command: str) -> str:
    """Return the argument following command in argv (argv[0] is the program)."""
    for arg, value in zip(argv[1:-1], argv[2:]):
        if arg == command:
            return value
    return ""


def get_env_name_from_raw(raw: str) -> str:
    """Return the variable name of a 'name=value' string."""
    return raw.split("=", 1)[0]


_BAD_FILE_NAME = re.compile(r"[\x00-\x1f\x7f]|[\"']|\\|[/^`]|^ | \Z|^\.\.\Z|^\.\Z")


def correct_file_name(name: str) -> bool:
    """Return True if name is acceptable as a single file name."""
    size = len(name.encode("utf-8", errors="surrogateescape"))
    if size < 1:
        logger.debug("incorrectFile size = 0")
        return False
    if size > FILENAME_SIZE_LIMIT:
        logger.debug("incorrectFile size > %d", FILENAME_SIZE_LIMIT)
        return False
    if "\0" in name:
        logger.debug("incorrectFile containing 0 char code '%s'", name)
        return False
    found = _BAD_FILE_NAME.search(name)
    if found:
        logger.debug("incorrectFile '%s' found '%s'", name, found.group(0))
        return False
    return True


def correct_path(path: str) -> bool:
    """Return True if every component of path is a correct file name."""
    if not path:
        logger.debug("file path size = 0")
        return False
    if len(path.encode("utf-8", errors="surrogateescape")) > PATH_SIZE_LIMIT:
        logger.debug("file path size > %d", PATH_SIZE_LIMIT)
        return False
    pos = 0
    if path.startswith("/"):
        pos = 1
    if path.startswith("./"):
        pos = 2
    if len(path) <= pos:
        logger.debug("file path with no file '%s'", path)
        return False
    return all(correct_file_name(part) for part in path[pos:].split("/"))


def get_directory(path: str) -> str:
    """Return the directory part of path, or '' when there is none."""
    pos = path.rfind("/")
    return path[:pos] if pos != -1 else ""


def _make_owned_dir(path: str, user: int) -> bool:
    if dir_exists(path):
        return True
    try:
        os.mkdir(path, 0o700)
    except OSError as exc:
        logger.debug("Can't create dir '%s' %s", path, exc)
        return False
    try:
        os.lchown(path, user, user)
    except OSError as exc:
        logger.debug("Can't lchown dir '%s' %s", path, exc)
        return False
    return True


def create_dir(path: str, user: int, pos: int = 1) -> bool:
    """Create path and missing parents after position pos, owned by user."""
    pos = pos or 1
    logger.debug("createDir '%s' user %d pos %d", path, user, pos)
    while (found := path.find("/", pos)) != -1:
        if not _make_owned_dir(path[:found], user):
            return False
        pos = found + 1
    return _make_owned_dir(path, user)


def remove_crs(text: str) -> str:
    """Drop CRs, or turn them into newlines when text has no newline."""
    if "\n" not in text:
        return text.replace("\r", "\n")
    return text.replace("\r", "")


def path_changed(path: str, pos: int) -> bool:
    """Return True if path after pos holds '..' or passes through a symlink."""
    if not pos:
        return False
    while (found := path.find("/", pos)) != -1:
        if path[pos:found] == "..":
            return True
        mode = _stat_mode(path[:found], False)
        if mode is not None and stat.S_ISLNK(mode):
            return True
        pos = found + 1
    mode = _stat_mode(path, False)
    return mode is not None and stat.S_ISLNK(mode)


def write_file(name: str, data: bytes | str, user: int = 0, pos: int = 0) -> None:
    """Create or replace a file, making directories after pos as needed."""
    if not correct_path(name):
        logger.error("Trying to write an incorrect filename '%s'", name)
        raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't write file")
    if dir_exists(name):
        logger.error("Trying to replace a dir with a file '%s'", name)
        raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't write file")
    if path_changed(name, pos):
        logger.error("Trying go out of base directory with file '%s'", name)
        raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't write file")
    payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    try:
        handle = open(name, "wb")
    except OSError:
        directory = get_directory(name)
        logger.debug("path '%s' dir '%s'", name, directory)
        if directory:
            create_dir(directory, user, pos)
        try:
            handle = open(name, "wb")
        except OSError as exc:
            raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't write file") from exc
    with handle:
        try:
            handle.write(payload)
        except OSError as exc:
            raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't write to file") from exc
    if user:
        try:
            os.lchown(name, user, user)
        except OSError as exc:
            logger.warning("Can't change file owner %s", exc)
    is_script = len(name) > 4 and name.endswith(".sh")
    try:
        os.chmod(name, 0o700 if is_script else 0o600)
    except OSError as exc:
        logger.error("Can't change file perm %s", exc)


def read_file(name: str, throw_error: bool = True, pos: int = 0) -> bytes:
    """Return a file's contents; on failure raise HttpError or return b''."""
    if not correct_path(name) or path_changed(name, pos):
        logger.error("Trying to read an incorrect filename '%s'", name)
        if throw_error:
            raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't read file")
        return b""
    try:
        with open(name, "rb") as handle:
            return handle.read()
    except OSError as exc:
        if throw_error:
            raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "I can't read file") from exc
        return b""


def delete_file(path: str, pos: int = 0) -> None:
    """Delete a regular file unless it lies under a symlinked directory."""
    if dir_exists(path):
        logger.error('Can\'t unlink "%s": is a directory', path)
        return
    if path_changed(get_directory(path), pos):
        logger.error('Can\'t unlink "%s": is under symlink directory?', path)
        return
    if file_exists(path):
        logger.debug('Delete "%s"', path)
        try:
            os.unlink(path)
        except OSError as exc:
            logger.error('Can\'t unlink "%s": %s', path, exc)


def remove_dir(path: str, owner: int, force: bool) -> int:
    """Remove a directory tree, or only what owner owns; return removals."""
    if not dir_exists(path):
        return 0
    info = os.lstat(path)
    remove_all = force or info.st_uid == owner or info.st_gid == owner
    try:
        names = os.listdir(path)
    except OSError as exc:
        logger.error('Can\'t open dir "%s": %s', path, exc)
        return 0
    removed = 0
    for name in names:
        full = f"{path}/{name}"
        try:
            info = os.lstat(full)
        except OSError:
            continue
        if stat.S_ISDIR(info.st_mode):
            removed += remove_dir(full, owner, remove_all)
        elif remove_all or info.st_uid == owner or info.st_gid == owner:
            logger.debug('Delete "%s"', full)
            try:
                os.unlink(full)
            except OSError as exc:
                logger.error('Can\'t unlink "%s": %s', full, exc)
            else:
                removed += 1
    if remove_all:
        logger.debug('rmdir "%s"', path)
        try:
            os.rmdir(path)
        except OSError as exc:
            logger.error('Can\'t rmdir "%s": %s', path, exc)
        else:
            removed += 1
    return removed


def fdblock(fd: int, block: bool = True) -> None:
    """Put a file descriptor into blocking or non-blocking mode."""
    try:
        os.set_blocking(fd, block)
    except OSError as exc:
        logger.error("fcntl F_SETFL: %s", exc)


def time_of_file_modification(path: str) -> int:
    """Return a file's modification time in seconds, or 0."""
    try:
        return int(os.stat(path).st_mtime)
    except OSError:
        return 0


def version() -> str:
    """Return the server version."""
    return VERSION


_HEX_DIGITS = "0123456789abcdefABCDEF"


def url_decode(encoded: str) -> str:
    """Decode %XX escapes and '+' as space."""
    out = bytearray()
    raw = encoded.encode("utf-8", errors="surrogateescape")
    length = len(raw)
    i = 0
    while i < length:
        char = raw[i]
        if char == ord("%"):
            if i + 2 >= length:
                raise HttpError(
                    HttpStatus.BAD_REQUEST,
                    "URLdecode: incomplete percent-encoding sequence at the end of string",
                )
            digits = raw[i + 1:i + 3].decode("latin-1")
            if any(digit not in _HEX_DIGITS for digit in digits):
                raise HttpError(
                    HttpStatus.BAD_REQUEST,
                    "URLdecode: non hex digits in percent-encoding sequence",
                )
            out.append(int(digits, 16))
            i += 3
            continue
        out.append(ord(" ") if char == ord("+") else char)
        i += 1
    return out.decode("utf-8", errors="surrogateescape")


def utf8_char_length(data: bytes, pos: int) -> int:
    """Return the UTF-8 length at pos, 0 past the end, or -(bytes to skip)."""
    if pos >= len(data):
        return 0
    lead = data[pos]
    if lead >> 7 == 0:
        return 1
    if lead >> 5 == 0b110:
        count = 2
    elif lead >> 4 == 0b1110:
        count = 3
    elif lead >> 3 == 0b11110:
        count = 4
    else:
        return -1
    if pos + count > len(data):
        return -1
    for index in range(1, count):
        if data[pos + index] >> 6 != 0b10:
            return -(index + 1)
    return count


def clean_utf8(data: bytes) -> bytes:
    """Return data with malformed UTF-8 sequences dropped."""
    clean = bytearray()
    pos = 0
    while pos < len(data):
        count = utf8_char_length(data, pos)
        if count > 0:
            clean += data[pos:pos + count]
            pos += count
        elif count == 0:
            break
        else:
            pos -= count
    return bytes(clean)