"""Process inspection via /proc (used to find the background proxy binary)."""

from pathlib import Path

PROC_ROOT = Path("/proc")


def read_cmdline(pid: int, proc_root: Path = PROC_ROOT) -> str:
    """Read command line from /proc/[pid]/cmdline as space-separated string."""
    try:
        data = (proc_root / str(pid) / "cmdline").read_bytes()
        return data.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()
    except (OSError, FileNotFoundError):
        return ""


def list_pids(proc_root: Path = PROC_ROOT) -> list[int]:
    """List numeric /proc entries in ascending order."""
    try:
        return sorted(int(p.name) for p in proc_root.iterdir() if p.name.isdigit())
    except OSError:
        return []


def find_pids(signature: str, proc_root: Path = PROC_ROOT, exclude: tuple[str, ...] = ("sudo",)) -> list[int]:
    """Find processes whose command line contains signature.

    Launcher wrappers (sudo) carry the same arguments as the real process,
    so command lines starting with an excluded executable are skipped.
    """
    pids = []
    for pid in list_pids(proc_root):
        cmdline = read_cmdline(pid, proc_root)
        if signature not in cmdline:
            continue
        exe = Path(cmdline.split(" ", 1)[0]).name
        if exe in exclude:
            continue
        pids.append(pid)
    return pids


def is_alive(pid: int | None, proc_root: Path = PROC_ROOT) -> bool:
    """Check that a process exists and is not a zombie."""
    if not pid:
        return False
    try:
        stat = (proc_root / str(pid) / "stat").read_text()
    except (OSError, FileNotFoundError):
        return False
    # Format: pid (comm) state ...; comm can contain spaces and parens
    end = stat.rfind(")")
    rest = stat[end + 2:].split()
    return bool(rest) and rest[0] != "Z"
