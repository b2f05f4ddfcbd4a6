from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
import logging
import os
import subprocess


REDACTED = "[REDACTED]"


class CommandError(RuntimeError):
    pass


LOGGER = logging.getLogger("prseed.shell")


def redact_secrets(text: str, secrets: Iterable[str]) -> str:
    result = text
    for secret in secrets:
        if secret:
            result = result.replace(secret, REDACTED)
    return result


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    redact: tuple[str, ...] = (),
) -> str:
    merged_env = dict(os.environ)
    if env:
        merged_env.update(env)
    # Never block on an interactive credential prompt.
    merged_env["GIT_TERMINAL_PROMPT"] = "0"
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
        env=merged_env,
    )
    if check and proc.returncode != 0:
        command = redact_secrets(" ".join(argv), redact)
        stdout = redact_secrets(proc.stdout, redact)
        stderr = redact_secrets(proc.stderr, redact)
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command,
            proc.returncode,
            _preview(stderr),
            _preview(stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )
    return redact_secrets(proc.stdout, redact)
