import logging
import re
import shutil
import subprocess
from typing import Dict, Iterable

logger = logging.getLogger(__name__)

_PS_LINE_RE = re.compile(r"^(\d+)\s+([\d.]+)")


def parse_ps_output(output: str) -> Dict[int, float]:
    """'  1234  12.5' lines → {1234: 12.5}"""
    usage: Dict[int, float] = {}
    for line in output.strip().splitlines():
        m = _PS_LINE_RE.match(line.strip())
        if m:
            usage[int(m.group(1))] = float(m.group(2))
    return usage


def query_cpu_usage(pids: Iterable[int]) -> Dict[int, float]:
    """CPU percent per pid from a single `ps` call. Empty when ps is unavailable."""
    pid_list = [str(pid) for pid in pids]
    if not pid_list:
        return {}
    if shutil.which("ps") is None:
        return {}

    try:
        result = subprocess.run(
            ["ps", "-p", ",".join(pid_list), "-o", "pid=,%cpu="],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"CPU_POLL: ps failed: {e}")
        return {}

    # ps exits 1 when some pids are gone; whatever it printed is still valid
    return parse_ps_output(result.stdout or "")
