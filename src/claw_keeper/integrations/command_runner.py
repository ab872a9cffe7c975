from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping


def run_command(
    cmd: list[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``cmd`` to completion and capture its text output.

    ``env`` entries are layered over the current environment. A non-zero exit
    is returned, not raised; callers decide what a failure means.
    """
    resolved_env: dict[str, str] | None = None
    if env:
        resolved_env = dict(os.environ)
        resolved_env.update({str(key): str(value) for key, value in env.items()})
    return subprocess.run(
        cmd,
        check=False,
        text=True,
        capture_output=True,
        env=resolved_env,
        timeout=timeout,
    )
