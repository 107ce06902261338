#!/usr/bin/env python3
"""
Check which running processes use outdated libraries.

This is useful to run after an upgrade, to find out which processes need to be
restarted. Every executable mapping in /proc/<pid>/maps whose backing file has
been replaced or removed is marked "(deleted)" by the kernel; those are the
ones reported, minus a list of ignore patterns for files that are expected to
be deleted.
"""

import argparse
import errno
import os
import re
import sys
from dataclasses import dataclass
from fnmatch import translate
from functools import lru_cache
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional, TextIO, Tuple

PROC_ROOT = "/proc"
DELETED_SUFFIX = " (deleted)"

IGNORE_PATTERNS = (
    "/dev/*",  # device files
    "/run/*",  # temporary run-time files
    "/var/run/*",
    "/memfd:*",  # temporary memory files, e.g. from a JIT compiler
    "/tmp/.gl*",  # temporary OpenGL files, e.g. /tmp/.glWSsluM
)

HELP = """\
Checks which currently running processes use outdated libraries.

Options:
  -p PID   Only check the process with the given PID. Can be given multiple
           times, in which case all explicitly given processes are checked.
  -v       List all outdated libraries for each process.
  -f       Show full library path instead of just the filename.
  -c 0|1   Whether to use colors in output. If not supplied, colored output is
           enabled if stdout goes to a terminal.
  -h       Print this help message and exit.

Exit status:
  0  success
  1  invalid command line option
  2  severe failure during execution
"""


class UsageError(Exception):
    """Raised for invalid command line arguments."""


class FatalError(Exception):
    """Raised when the scan cannot run at all."""


@dataclass(frozen=True)
class Palette:
    name: str = "\033[0;35m"
    exe: str = "\033[0;33m"  # exe name when it differs from comm
    pid: str = "\033[0;1m"
    library: str = "\033[0;31m"
    error: str = "\033[1;31m"
    warn: str = "\033[1;33m"
    reset: str = "\033[0m"


@dataclass(frozen=True)
class ScanOptions:
    pids: Tuple[int, ...] = ()
    verbose: bool = False
    full_path: bool = False
    color: Optional[bool] = None  # None: auto-detect from the result stream
    ignore_patterns: Tuple[str, ...] = IGNORE_PATTERNS
    palette: Palette = Palette()
    proc_root: str = PROC_ROOT


class MemoryMapping(NamedTuple):
    address: str
    perms: str
    path: str
    deleted: bool

    @property
    def executable(self) -> bool:
        return len(self.perms) > 2 and self.perms[2] == "x"


class ProcessIdentity(NamedTuple):
    pid: int
    comm: str = ""
    exe: str = ""


def list_pids(options: ScanOptions) -> List[int]:
    """Return the PIDs to check, either the explicit ones or all running."""
    if options.pids:
        return list(options.pids)

    try:
        entries = os.listdir(options.proc_root)
    except OSError as e:
        raise FatalError(f"couldn't get PID list: {e.strerror}") from e

    return sorted(int(entry) for entry in entries if re.fullmatch(r"[0-9]+", entry))


def read_mappings(pid: int, proc_root: str = PROC_ROOT) -> Iterator[MemoryMapping]:
    """
    Yield the executable, file backed mappings of a process.

    Raises OSError if the maps file can't be opened or read, e.g. because the
    process terminated in the meantime.
    """
    with open(os.path.join(proc_root, str(pid), "maps"), "rb") as file:
        for line in file:
            # address perms offset dev inode [path]
            parts = line.decode(errors="replace").split(maxsplit=5)
            if len(parts) != 6:
                continue

            address, perms = parts[0], parts[1]
            path = parts[5].strip()
            if len(perms) < 3 or perms[2] != "x" or not path:
                continue

            deleted = path.endswith(DELETED_SUFFIX)
            if deleted:
                path = path[: -len(DELETED_SUFFIX)]
            yield MemoryMapping(address, perms, path, deleted)


@lru_cache(maxsize=None)
def compile_patterns(patterns: Tuple[str, ...]) -> List[re.Pattern]:
    return [re.compile(translate(pattern)) for pattern in patterns]


def is_ignored(path: str, matchers: Iterable[re.Pattern]) -> bool:
    return any(matcher.match(path) for matcher in matchers)


def outdated_libraries(
    mappings: Iterable[MemoryMapping], options: ScanOptions
) -> List[str]:
    matchers = compile_patterns(options.ignore_patterns)
    paths = {
        mapping.path
        for mapping in mappings
        if mapping.executable
        and mapping.deleted
        and not is_ignored(mapping.path, matchers)
    }

    if not options.full_path:
        # libraries are flagged by name, so equal basenames collapse into one
        paths = {os.path.basename(path) for path in paths}

    return sorted(paths)


def resolve_identity(
    pid: int, proc_root: str = PROC_ROOT, warn: Optional[Callable[[str], None]] = None
) -> ProcessIdentity:
    """
    Look up the comm and exe names of a process.

    Names that can't be read are left empty, with a warning through ``warn``.
    """
    exe_path = os.path.join(proc_root, str(pid), "exe")
    exe_name = ""
    try:
        target = os.readlink(exe_path)
    except FileNotFoundError:
        # kernel threads have no exe
        pass
    except OSError:
        if warn:
            warn(f"couldn't resolve {exe_path}")
    else:
        if target.endswith(DELETED_SUFFIX):
            target = target[: -len(DELETED_SUFFIX)]
        exe_name = os.path.basename(target)

    comm_path = os.path.join(proc_root, str(pid), "comm")
    comm_name = ""
    try:
        with open(comm_path, "rb") as file:
            comm_name = file.read().decode(errors="replace").rstrip("\n")
    except OSError:
        if warn:
            warn(f"couldn't read {comm_path}")

    return ProcessIdentity(pid, comm_name, exe_name)


class Reporter:
    """Writes results to ``out`` and progress, warnings and errors to ``err``."""

    def __init__(self, options: ScanOptions, out: TextIO, err: TextIO) -> None:
        self.options = options
        self.out = out
        self.err = err
        if options.color is None:
            self.color = out.isatty()
        else:
            self.color = options.color
        self._progress_width = 0

    def cstr(self, text: str, color: str) -> str:
        if not self.color:
            return text
        return f"{color}{text}{self.options.palette.reset}"

    def progress(self, index: int, total: int) -> None:
        status = f"[{index}/{total}]"
        self.err.write(f"{status}\r")
        self.err.flush()
        self._progress_width = len(status)

    def clear_progress(self) -> None:
        if self._progress_width:
            self.err.write(" " * self._progress_width + "\r")
            self.err.flush()
            self._progress_width = 0

    def warn(self, message: str) -> None:
        self.clear_progress()
        prefix = self.cstr("Warning", self.options.palette.warn)
        print(f"{prefix}: {message}", file=self.err)

    def error(self, message: str) -> None:
        self.clear_progress()
        prefix = self.cstr("Error", self.options.palette.error)
        print(f"{prefix}: {message}", file=self.err)

    def format_identity(self, identity: ProcessIdentity) -> str:
        palette = self.options.palette
        pid = self.cstr(str(identity.pid), palette.pid)

        if not identity.exe:
            return f"{self.cstr(identity.comm, palette.name)} ({pid})"

        # comm is truncated by the kernel, so it may be a prefix of exe
        if identity.exe.startswith(identity.comm):
            return f"{self.cstr(identity.exe, palette.name)} ({pid})"

        comm = self.cstr(identity.comm, palette.name)
        exe = self.cstr(identity.exe, palette.exe)
        return f"{comm} ({exe}, {pid})"

    def format_libraries(self, libraries: List[str]) -> str:
        palette = self.options.palette
        if len(libraries) == 1:
            return f"outdated {self.cstr(libraries[0], palette.library)}"

        if not self.options.verbose:
            return "multiple outdated libraries"

        lines = ["multiple outdated libraries:"]
        lines.extend(f"    {self.cstr(lib, palette.library)}" for lib in libraries)
        return "\n".join(lines)

    def report(self, identity: ProcessIdentity, libraries: List[str]) -> None:
        self.clear_progress()
        self.out.write(
            f"{self.format_identity(identity)} uses {self.format_libraries(libraries)}\n"
        )
        self.out.flush()


def scan(options: ScanOptions, reporter: Reporter) -> int:
    """Check every selected process and report it if it uses outdated libraries."""
    pids = list_pids(options)
    found = 0

    for i, pid in enumerate(pids, start=1):
        reporter.progress(i, len(pids))
        proc_dir = os.path.join(options.proc_root, str(pid))

        # the process may have terminated since it was listed
        if not os.path.isdir(proc_dir):
            continue

        try:
            libraries = outdated_libraries(
                read_mappings(pid, options.proc_root), options
            )
        except OSError as e:
            maps_path = os.path.join(proc_dir, "maps")
            if e.errno == errno.ENOENT:
                if os.path.isdir(proc_dir):
                    reporter.warn(f"{maps_path} doesn't exist")
            elif e.errno != errno.ESRCH:  # ESRCH: exited while being read
                reporter.warn(f"couldn't read {maps_path}: {e.strerror}")
            continue

        if not libraries:
            continue

        identity = resolve_identity(pid, options.proc_root, reporter.warn)
        reporter.report(identity, libraries)
        found += 1

    reporter.clear_progress()
    return found


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)

    def format_usage(self) -> str:
        return f"Usage: {self.prog} [-p PID]... [-v] [-f] [-c 0|1] [-h]\n"


def _pid(value: str) -> int:
    if not re.fullmatch(r"[0-9]+", value):
        raise argparse.ArgumentTypeError(f"Invalid PID: {value}")
    return int(value)


def _color(value: str) -> bool:
    if value not in ("0", "1"):
        raise argparse.ArgumentTypeError("-c expects 0 or 1")
    return value == "1"


class HelpRequested(Exception):
    """Raised as soon as -h is reached, before later arguments are checked."""


class _HelpAction(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs):
        super().__init__(option_strings, dest, nargs=0, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        raise HelpRequested()


def get_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="restart-check", add_help=False)
    parser.add_argument("-p", dest="pids", type=_pid, action="append", default=[])
    parser.add_argument("-v", dest="verbose", action="store_true")
    parser.add_argument("-f", dest="full_path", action="store_true")
    parser.add_argument("-c", dest="color", type=_color, default=None)
    parser.add_argument("-h", action=_HelpAction)
    return parser


def parse_options(
    parser: ArgumentParser, argv: Optional[List[str]] = None, proc_root: str = PROC_ROOT
) -> ScanOptions:
    """Raises UsageError on bad arguments and HelpRequested on -h."""
    args = parser.parse_args(argv)
    return ScanOptions(
        pids=tuple(args.pids),
        verbose=args.verbose,
        full_path=args.full_path,
        color=args.color,
        proc_root=proc_root,
    )


def main(
    argv: Optional[List[str]] = None,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
    proc_root: str = PROC_ROOT,
) -> int:
    out = out or sys.stdout
    err = err or sys.stderr
    parser = get_parser()

    try:
        options = parse_options(parser, argv, proc_root)
    except HelpRequested:
        err.write(parser.format_usage())
        err.write("\n" + HELP)
        return 0
    except UsageError as e:
        Reporter(ScanOptions(), out, err).error(str(e))
        err.write(parser.format_usage())
        return 1

    reporter = Reporter(options, out, err)
    try:
        scan(options, reporter)
    except FatalError as e:
        reporter.error(str(e))
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
