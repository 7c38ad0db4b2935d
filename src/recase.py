#!/usr/bin/env python3

# SPDX-FileCopyrightText: 2011-present Łukasz Langa <lukasz@langa.pl>
# SPDX-License-Identifier: GPL-3.0-or-later
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, version 3 of the License.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

"""Converts file and directory names to upper or lower case, and tallies
file extensions found in a directory tree."""

#
# This utility should use no dependencies other than Python 3.7+.
#

from __future__ import annotations

import argparse
import enum
import os
import shutil
import sys
from collections import Counter
from typing import Any, Callable, NewType, TextIO

__version__ = "23.1.0"


class LetterCase(enum.Enum):
    UPPER = "upper"
    LOWER = "lower"


TRANSFORM: dict[LetterCase, Callable[[str], str]] = {
    LetterCase.UPPER: lambda x: x.upper(),
    LetterCase.LOWER: lambda x: x.lower(),
}

StatusCode = NewType("StatusCode", int)


class Converter:
    def __init__(
        self,
        *,
        case: LetterCase = LetterCase.UPPER,
        recursive: bool = False,
        ignore_files: bool = False,
        ignore_dirs: bool = False,
        test: bool = False,
        quiet: bool = False,
    ):
        if ignore_files and ignore_dirs:
            raise ValueError("ignore_files and ignore_dirs are mutually exclusive")
        self.case = case
        self.recursive = recursive
        self.ignore_files = ignore_files
        self.ignore_dirs = ignore_dirs
        self.test = test
        self.quiet = quiet

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> Converter:
        return cls(
            case=LetterCase(args.command),
            recursive=args.recursive,
            ignore_files=args.ignore_files,
            ignore_dirs=args.ignore_dirs,
            test=args.test,
            quiet=args.quiet,
        )

    def convert(self, path: str) -> StatusCode:
        """Converts `path` and, when recursive, everything below it.

        The path itself is always converted last, regardless of
        `ignore_dirs`.  Returns a non-zero status code on failure,
        outputting any error information to stderr.
        """
        DEVNULL = open(os.devnull, "w")
        stdout = DEVNULL if self.quiet else sys.stdout
        stderr = DEVNULL if self.quiet else sys.stderr
        try:
            if not os.path.lexists(path):
                print(f"Error: {printable(path)} does not exist", file=stderr)
                return StatusCode(1)
            if self.recursive and os.path.isdir(path) and not os.path.islink(path):
                self.walk(path, stdout=stdout, stderr=stderr)
            self.convert_path(path, stdout=stdout, stderr=stderr)
            return StatusCode(0)
        except ValueError as exc:
            print(f"Error: {exc}", file=stderr)
            return StatusCode(1)
        except OSError as exc:
            print(f"Error: {exc}", file=stderr)
            return StatusCode(2)
        finally:
            DEVNULL.close()

    def target_name(self, name: str) -> str:
        return TRANSFORM[self.case](name)

    def convert_path(
        self,
        path: str,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        """Converts the final component in a path to the configured case.

        E.g. `/foo/bar/baz.zip` => `/foo/bar/BAZ.ZIP` for LetterCase.UPPER.

        Paths without a final component (like `/`) are left alone, as are
        names that already have the right case.  Raises ValueError instead
        of overwriting a different file that already has the target name.
        Output goes to `stdout` and `stderr`, the current sys streams
        when not given.
        """
        path = os.path.normpath(path)
        parent, name = os.path.split(path)
        if name in ("", os.curdir, os.pardir):
            return
        target_name = self.target_name(name)
        if target_name == name:
            if self.test:
                print(
                    f"note: {printable(path)} already has the right case.",
                    file=stderr,
                )
            return
        target = os.path.join(parent or os.curdir, target_name)
        if os.path.lexists(target) and not is_same_file(target, path):
            raise ValueError(
                f"Target {printable(target)} already exists"
                f" for source {printable(path)}"
            )
        shown = printable(path), printable(target)
        if self.test:
            print(f"Would run os.rename{shown}", file=stdout)
        else:
            print(f"Converting {shown[0]} => {shown[1]}", file=stdout)
            os.rename(path, target)

    def _should_convert(self, entry: os.DirEntry[str]) -> bool:
        if entry.is_dir(follow_symlinks=False):
            return not self.ignore_dirs
        if entry.is_file(follow_symlinks=False) or entry.is_symlink():
            return not self.ignore_files
        return False

    def walk(
        self,
        root: str,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        """Converts the entries of `root`, deepest first.

        Subdirectories are only descended into when `recursive` is set.
        A directory is renamed after everything inside it, so paths
        to deeper entries stay valid while they are being converted.

        Raises an exception on first failure and doesn't proceed.
        """
        entries = list_entries(root)
        targets: dict[str, list[str]] = {}
        for entry in entries:
            if self._should_convert(entry):
                targets.setdefault(self.target_name(entry.name), []).append(
                    entry.name
                )
        # sanity check
        for target, sources in targets.items():
            if len(sources) > 1:
                names = ", ".join(printable(s) for s in sorted(sources))
                raise ValueError(
                    f"Multiple entries ({names}) would be written to"
                    f" {printable(os.path.join(root, target))}"
                )
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if self.recursive:
                    self.walk(entry.path, stdout=stdout, stderr=stderr)
                if not self.ignore_dirs:
                    self.convert_path(entry.path, stdout=stdout, stderr=stderr)
            elif entry.is_file(follow_symlinks=False) or entry.is_symlink():
                if not self.ignore_files:
                    self.convert_path(entry.path, stdout=stdout, stderr=stderr)


def printable(name: str) -> str:
    """Escapes bytes that don't decode in the filesystem encoding.

    Such bytes come back from the OS as lone surrogates, which a strict
    UTF-8 stdout refuses to encode.
    """
    return os.fsencode(name).decode(sys.getfilesystemencoding(), "backslashreplace")


def list_entries(path: str) -> list[os.DirEntry[str]]:
    """Lists `path` up front so entries can be renamed while iterating."""
    with os.scandir(path) as it:
        return list(it)


def is_same_file(file1: str, file2: str) -> bool:
    return (
        os.path.abspath(file1).lower() == os.path.abspath(file2).lower()
        and os.lstat(file1).st_ino == os.lstat(file2).st_ino
    )


def extension_of(name: str) -> str | None:
    """Returns the extension of a file name, without the leading dot.

    Dot-files like `.bashrc` and names ending with a bare dot have none.
    """
    _, ext = os.path.splitext(name)
    if len(ext) < 2:
        return None
    return ext[1:]


def tally_extensions(root: str) -> Counter[str]:
    """Counts file extensions in the whole tree under `root`.

    Directories don't count, symlinks count as files and are not followed.
    Raises OSError on first failure.
    """
    result: Counter[str] = Counter()
    for entry in list_entries(root):
        if entry.is_dir(follow_symlinks=False):
            result.update(tally_extensions(entry.path))
        elif entry.is_file(follow_symlinks=False) or entry.is_symlink():
            ext = extension_of(entry.name)
            if ext is not None:
                result[ext] += 1
    return result


def unique_ext(path: str, *, quiet: bool = False) -> StatusCode:
    """Prints each extension found under `path` with its file count.

    Returns a non-zero status code on failure, outputting any error
    information to stderr.
    """
    DEVNULL = open(os.devnull, "w")
    stdout = DEVNULL if quiet else sys.stdout
    stderr = DEVNULL if quiet else sys.stderr
    try:
        if not os.path.isdir(path):
            print(
                f"Error: {printable(path)} does not exist or is not a directory",
                file=stderr,
            )
            return StatusCode(1)
        extensions = tally_extensions(path)
        for ext in sorted(extensions):
            print(f"{printable(ext)} ({extensions[ext]} files)", file=stdout)
        return StatusCode(0)
    except OSError as exc:
        print(f"Error: {exc}", file=stderr)
        return StatusCode(2)
    finally:
        DEVNULL.close()


class ProxyMember:
    def __init__(self, name: str, targets: tuple[object, ...]) -> None:
        self.name = name
        self.targets = targets

    def __call__(self, *args: Any, **kwargs: Any) -> list[Any]:
        result: list[Any] = []
        for target in self.targets:
            result.append(getattr(target, self.name)(*args, **kwargs))
        return result


class Proxy:
    def __init__(self, *targets: object) -> None:
        self.targets = targets

    def __getattr__(self, name: str) -> Any:
        return ProxyMember(name, self.targets)


class SentinelStr(str):
    """A special string that the user cannot ever pass."""


use_tmp = SentinelStr("use_tmp")


def run(cmdline_args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="recase",
        description="Simple utilities for file name case and extensions.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--selftest",
        nargs="?",
        const=use_tmp,
        metavar="use_directory",
        help="run internal tests",
    )
    commands = parser.add_subparsers(dest="command", metavar="command")
    upper = commands.add_parser(
        "upper", help="convert files and/or directories to upper case"
    )
    lower = commands.add_parser(
        "lower", help="convert files and/or directories to lower case"
    )
    unique = commands.add_parser(
        "unique_ext", help="find all unique extensions in this directory"
    )
    every = Proxy(upper, lower, unique)
    every.add_argument("path", help="file or directory path")
    every.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="don't print anything, just return status codes",
    )
    common = Proxy(upper, lower)
    common.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        help="convert directories recursively",
    )
    common.add_argument(
        "-t",
        "--test",
        action="store_true",
        help="test only, don't actually rename anything",
    )
    unique.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        help="accepted for symmetry, the tally always recurses",
    )
    ignore = Proxy(*common.add_mutually_exclusive_group())
    ignore.add_argument(
        "--ignore-files",
        action="store_true",
        help="ignore files during conversion",
    )
    ignore.add_argument(
        "--ignore-dirs",
        action="store_true",
        help="ignore directories during conversion",
    )
    args = parser.parse_args(cmdline_args)
    if args.selftest:
        status_code = selftest(args.selftest)
    elif args.command == "unique_ext":
        status_code = unique_ext(args.path, quiet=args.quiet)
    elif args.command in ("upper", "lower"):
        converter = Converter.from_args(args)
        status_code = converter.convert(args.path)
    else:
        parser.error("a command is required")
    sys.exit(status_code)


# Number of entries left after creating `CaSe` and `case` side by side.
CASE_SENSITIVE = StatusCode(2)
CASE_PRESERVING = StatusCode(1)
CASE_INSENSITIVE = StatusCode(-1)


def _build_tree(paths: set[str]) -> None:
    """Creates `paths` in the current directory; directories end with `/`."""
    for path in sorted(paths):
        if path.endswith("/"):
            os.makedirs(path, exist_ok=True)
            continue
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w") as f:
            f.write(path)
            f.write("\r\n")


def _snapshot() -> set[str]:
    """Lists the current directory tree in the format `_build_tree` takes."""
    result = set()
    for dirpath, dirnames, filenames in os.walk(os.curdir):
        for name in dirnames:
            rel = os.path.relpath(os.path.join(dirpath, name), os.curdir)
            result.add(rel.replace(os.sep, "/") + "/")
        for name in filenames:
            rel = os.path.relpath(os.path.join(dirpath, name), os.curdir)
            result.add(rel.replace(os.sep, "/"))
    return result


def selftest(temp_dir: str = use_tmp) -> StatusCode:
    if temp_dir is use_tmp:
        temp_dir = ""

    test_count = 0
    failures = 0

    def _runtest(
        testcase: Callable[[], StatusCode], tree: set[str], show_dir: bool = False
    ) -> StatusCode:
        import tempfile

        dirpath = tempfile.mkdtemp(".selftest", "recase_", temp_dir or None)
        if show_dir:
            print(
                "Using", os.path.split(dirpath)[0], "as the temporary directory base."
            )
        cwd = os.getcwd()
        try:
            os.chdir(dirpath)
            try:
                _build_tree(tree)
            except OSError:  # pragma: no cover
                print("Cannot create temporary files in:", dirpath, file=sys.stderr)
                sys.exit(1)
            return testcase()
        finally:
            os.chdir(cwd)
            shutil.rmtree(dirpath)

    def test_fs_case() -> StatusCode:
        files = os.listdir(".")
        if len(files) == 2:
            print("Testing on a case-sensitive filesystem.")
            return CASE_SENSITIVE
        elif len(files) == 1:
            if files[0] == "CaSe":
                print("Testing on a case-preserving filesystem.")
                return CASE_PRESERVING
            else:  # pragma: no cover
                print("Testing on a case-insensitive filesystem.")
                return CASE_INSENSITIVE
        else:  # pragma: no cover
            print(
                f"Not all files were created successfully. "
                f"Expected 2 or 1, got {len(files)}.",
                file=sys.stderr,
            )
            return StatusCode(10)

    def _runcase(
        *,
        desc: str,
        tree: set[str],
        files: set[str],
        converter: Converter,
        result: StatusCode = StatusCode(0),
    ) -> None:
        nonlocal failures
        nonlocal test_count
        test_count += 1

        def case() -> StatusCode:  # pragma: no cover
            converter.quiet = True
            try:
                actual_result = converter.convert("case")
                if actual_result != result:
                    raise ValueError(f"status {actual_result}, expected {result}")
                actual_files = _snapshot()
                if actual_files != files:
                    extra_files = actual_files - files
                    missing_files = files - actual_files
                    if extra_files:
                        print("Extra files:", sorted(extra_files))
                    if missing_files:
                        print("Missing files:", sorted(missing_files))
                    raise ValueError("unexpected tree")
                print(f"Test {test_count} OK.")
                return StatusCode(0)
            except Exception as e:
                print(f"Test {test_count} ({desc}) failed: {e}.", file=sys.stderr)
                return StatusCode(1)

        failures += _runtest(case, tree)

    def _tallycase(*, desc: str, tree: set[str], counts: dict[str, int]) -> None:
        nonlocal failures
        nonlocal test_count
        test_count += 1

        def case() -> StatusCode:  # pragma: no cover
            try:
                actual = tally_extensions("case")
                if actual != Counter(counts):
                    raise ValueError(f"got {dict(actual)}, expected {counts}")
                print(f"Test {test_count} OK.")
                return StatusCode(0)
            except Exception as e:
                print(f"Test {test_count} ({desc}) failed: {e}.", file=sys.stderr)
                return StatusCode(1)

        failures += _runtest(case, tree)

    def _common_tests() -> None:
        _runcase(
            desc="one/two/three -> upper (r)",
            converter=Converter(case=LetterCase.UPPER, recursive=True),
            tree={
                "case/one/one.file",
                "case/two/two.file",
                "case/three/three.file",
            },
            files={
                "CASE/",
                "CASE/ONE/",
                "CASE/ONE/ONE.FILE",
                "CASE/TWO/",
                "CASE/TWO/TWO.FILE",
                "CASE/THREE/",
                "CASE/THREE/THREE.FILE",
            },
        )
        _runcase(
            desc="TEST/BAR/BAZ.FILE -> lower (r)",
            converter=Converter(case=LetterCase.LOWER, recursive=True),
            tree={"case/TEST/BAR/BAZ.FILE"},
            files={"case/", "case/test/", "case/test/bar/", "case/test/bar/baz.file"},
        )
        _runcase(
            desc="mixed -> upper (r, ignore files)",
            converter=Converter(
                case=LetterCase.UPPER, recursive=True, ignore_files=True
            ),
            tree={"case/foo.file", "case/test/bar.file"},
            files={"CASE/", "CASE/foo.file", "CASE/TEST/", "CASE/TEST/bar.file"},
        )
        _runcase(
            desc="mixed -> upper (r, ignore dirs)",
            converter=Converter(
                case=LetterCase.UPPER, recursive=True, ignore_dirs=True
            ),
            tree={"case/foo.file", "case/test/bar.file"},
            files={"CASE/", "CASE/FOO.FILE", "CASE/test/", "CASE/test/BAR.FILE"},
        )
        _runcase(
            desc="mixed -> upper",
            converter=Converter(case=LetterCase.UPPER),
            tree={"case/foo.file", "case/test/bar.file"},
            files={"CASE/", "CASE/foo.file", "CASE/test/", "CASE/test/bar.file"},
        )
        _runcase(
            desc="mixed -> upper (r, test)",
            converter=Converter(case=LetterCase.UPPER, recursive=True, test=True),
            tree={"case/foo.file", "case/test/bar.file"},
            files={"case/", "case/foo.file", "case/test/", "case/test/bar.file"},
        )
        _tallycase(
            desc="foo, bar, baz123 extensions",
            tree={
                "case/testfile.foo",
                "case/testfile.bar",
                "case/sub/testfile.baz123",
                "case/sub/other.foo",
                "case/sub/README",
                "case/.hidden",
            },
            counts={"foo": 2, "bar": 1, "baz123": 1},
        )

    def _case_sensitive_tests() -> None:
        _runcase(
            desc="Foo + foo -> upper (r) collides",
            converter=Converter(case=LetterCase.UPPER, recursive=True),
            tree={"case/Foo", "case/foo"},
            files={"case/", "case/Foo", "case/foo"},
            result=StatusCode(1),
        )
        _runcase(
            desc="foo -> FOO over an existing FOO",
            converter=Converter(
                case=LetterCase.UPPER, recursive=True, ignore_dirs=True
            ),
            tree={"case/FOO/", "case/foo"},
            files={"case/", "case/FOO/", "case/foo"},
            result=StatusCode(1),
        )

    def _case_preserving_tests() -> None:
        _runcase(
            desc="CaSe.Txt -> lower (r)",
            converter=Converter(case=LetterCase.LOWER, recursive=True),
            tree={"case/CaSe.Txt"},
            files={"case/", "case/case.txt"},
        )

    which_fs = _runtest(test_fs_case, {"CaSe", "case"}, show_dir=True)
    tests = {
        CASE_SENSITIVE: _case_sensitive_tests,
        CASE_PRESERVING: _case_preserving_tests,
    }
    if which_fs not in tests:  # pragma: no cover
        sys.exit(which_fs)
    _common_tests()
    tests[which_fs]()
    if failures == 0:  # pragma: no cover
        print("All tests OK.")
    return StatusCode(failures)


if __name__ == "__main__":
    run()
