from __future__ import annotations
from typing import List, Sequence
import shlex, shutil

# Mount point of the job's scratch dir inside the namespace.
NS_WORKDIR = "/tmp/work"


def _mask_script(hide_paths: Sequence[str]) -> str:
    """
    Shell prelude run as namespace-root (pid 1 of the job's pid namespace)
    before exec'ing the job command.

    The process starts with cwd=<scratch>. Once its parent dir is masked the
    absolute path is gone, but the cwd reference is not: "." is handed to the
    kernel uncanonicalized (mount -c) and resolved from the cwd.
    /proc is remounted for the new pid namespace so host processes stay
    invisible; where procfs cannot be mounted it is hidden instead.
    """
    masks = " ".join(shlex.quote(p) for p in hide_paths)
    return (
        "set -e;"
        f"for p in {masks}; do"
        ' if [ -d "$p" ]; then mount -t tmpfs -o size=16m,mode=1777 tmpfs "$p"; fi;'
        " done;"
        f"mkdir -p {NS_WORKDIR};"
        f"mount -c --bind . {NS_WORKDIR};"
        "mount -t proc proc /proc 2>/dev/null || mount -t tmpfs -o size=1m tmpfs /proc;"
        f"cd {NS_WORKDIR};"
        'exec "$@"'
    )


def wrap_with_ns_chroot(cmd: List[str], hide_paths: Sequence[str], allow_network: bool) -> List[str]:
    """
    Unprivileged user+mount+pid(+net) namespace around `cmd`.
    - --fork --kill-child: the job runs as pid 1 of its own pid namespace; when
      it or unshare dies the kernel kills everything left inside, setsid()
      escapees included.
    - /tmp must be among the masked paths, it hosts NS_WORKDIR.
    """
    unshare = shutil.which("unshare")
    if not unshare:
        return cmd

    sh = shutil.which("sh") or "/bin/sh"
    flags = ["--user", "--map-root-user", "--mount", "--pid", "--fork", "--kill-child"]
    if not allow_network:
        flags.append("--net")

    paths = list(dict.fromkeys(["/tmp", *hide_paths]))
    return [unshare, *flags, sh, "-c", _mask_script(paths), "sh", *cmd]
