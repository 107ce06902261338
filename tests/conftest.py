"""Shared test fixtures: a fake /proc tree under tmp_path."""

import os

import pytest


class FakeProc:
    def __init__(self, root):
        self.root = str(root)

    @staticmethod
    def line(path="", perms="r-xp", inode=1234):
        """Format one maps line, padded the way the kernel pads it."""
        return f"7f3c5a000000-7f3c5a1c5000 {perms} 00000000 fd:01 {inode:<26}{path}".rstrip()

    def add(self, pid, maps=None, comm=None, exe=None):
        proc_dir = os.path.join(self.root, str(pid))
        os.mkdir(proc_dir)
        if maps is not None:
            with open(os.path.join(proc_dir, "maps"), "w") as f:
                f.writelines(line + "\n" for line in maps)
        if comm is not None:
            with open(os.path.join(proc_dir, "comm"), "w") as f:
                f.write(comm + "\n")
        if exe is not None:
            os.symlink(exe, os.path.join(proc_dir, "exe"))
        return proc_dir


@pytest.fixture
def fake_proc(tmp_path):
    return FakeProc(tmp_path)
