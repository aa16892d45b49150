"""Shell command builders for remote execution.

Every path, argument, and NAME=VALUE token is individually quoted with
shlex.quote(), so file names, arguments, and secret values can never be
interpreted by the remote shell. Strings without metacharacters come out
unchanged (`/wd`, `-e`, `key=one`).
"""

import posixpath
import shlex
from collections.abc import Iterable, Mapping, Sequence

from qemu_runner.models import File


def _parent_dir(path: str) -> str:
    return posixpath.dirname(path) or "."


def make_dirs_command(files: Iterable[File]) -> str:
    """Build one command creating the parent directory of every file.

    One `mkdir -p <dir>` clause per file, in input order, joined with `&&`.

    Example:
        >>> make_dirs_command([File(path="/some/dir/file one"), File(path="/some/other dir/file two")])
        "mkdir -p /some/dir && mkdir -p '/some/other dir'"

    Returns:
        The command, or an empty string when there are no files.
    """
    return " && ".join(f"mkdir -p {shlex.quote(_parent_dir(f.path))}" for f in files)


def chmod_command(files: Iterable[File]) -> str:
    """Build one command applying permission bits to uploaded files.

    Directories and files without a mode are skipped.
    """
    return " && ".join(
        f"chmod {f.mode:o} {shlex.quote(f.path)}" for f in files if not f.is_dir and f.mode
    )


def step_command(command: str, args: Sequence[str], env: Mapping[str, str], workdir: str) -> str:
    """Build the full remote command line for a step.

    Shape: `mkdir -p <wd> && cd <wd> && env [NAME=VALUE ...] <command> [args ...]`.
    Environment tokens follow the mapping's iteration order; callers must not
    depend on it.

    Example:
        >>> step_command("/bin/sh", ["-e", "/some/file.sh"], {}, "/wd")
        'mkdir -p /wd && cd /wd && env /bin/sh -e /some/file.sh'
    """
    quoted_wd = shlex.quote(workdir)
    env_tokens = [shlex.quote(f"{name}={value}") for name, value in env.items()]
    argv = [shlex.quote(command), *(shlex.quote(arg) for arg in args)]
    return f"mkdir -p {quoted_wd} && cd {quoted_wd} && " + " ".join(["env", *env_tokens, *argv])
