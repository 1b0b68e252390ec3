"""
Kernel log readers.

Follows the kernel ring buffer through ``dmesg`` or tails a syslog file,
turning each line into a timestamped LogLine. Readers yield ``None`` as
a heartbeat while alive but quiet, so a silent log is not mistaken for a
stalled one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import AsyncIterator, Sequence

from hidtrace.interceptor.events import LogLine


logger = logging.getLogger(__name__)


_PRI = re.compile(r"^<(?P<pri>\d{1,3})>")

# dmesg --time-format=iso, journalctl -o short-iso
_ISO = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\s+"
    r"(?P<msg>.*)$"
)

# Traditional syslog / kern.log
_RFC3164 = re.compile(
    r"^(?P<ts>[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+"
    r"(?P<host>\S+)\s+"
    r"(?P<tag>[^:\s]+):\s*"
    r"(?P<msg>.*)$"
)


def _parse_iso_ts(ts_str: str, default_tz: tzinfo | None) -> datetime | None:
    """Parse ISO-8601 variants into aware datetimes."""
    text = ts_str.replace(",", ".").replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # +0000 -> +00:00
    text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)
    # fromisoformat before 3.11 accepts only 3 or 6 fractional digits
    m = re.match(r"^(?P<head>[^.]+)\.(?P<frac>\d+)(?P<tail>.*)$", text)
    if m:
        frac = (m.group("frac") + "000000")[:6]
        text = f"{m.group('head')}.{frac}{m.group('tail')}"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=default_tz) if default_tz else ts.astimezone()
    return ts


def _parse_rfc3164_ts(
    ts_str: str,
    now: datetime,
    default_tz: tzinfo | None,
) -> datetime | None:
    """Parse RFC3164 timestamps (no year) relative to ``now``."""
    try:
        naive = datetime.strptime(f"{now.year} {ts_str}", "%Y %b %d %H:%M:%S")
    except ValueError:
        return None
    ts = naive.replace(tzinfo=default_tz) if default_tz else naive.astimezone()
    if ts > now + timedelta(days=1):
        ts = ts.replace(year=now.year - 1)
    return ts


def parse_log_line(
    raw: str,
    now: datetime | None = None,
    default_tz: tzinfo | None = None,
    source: str = "kernel",
) -> LogLine:
    """
    Parse a raw kernel/syslog line.

    Recognises ISO-8601 prefixes (dmesg, journalctl short-iso) and RFC3164
    syslog prefixes, each optionally preceded by a ``<PRI>`` field. Lines
    without a parseable timestamp are stamped with the arrival time.

    Args:
        raw: Line as read (trailing newline allowed)
        now: Arrival time (defaults to the current UTC time)
        default_tz: Zone for timestamps without an offset (local if None)
        source: Source label carried by the LogLine

    Returns:
        LogLine with an aware timestamp
    """
    now = now or datetime.now(timezone.utc)
    line = raw.rstrip("\r\n")
    body = _PRI.sub("", line, count=1)

    m = _ISO.match(body)
    if m:
        ts = _parse_iso_ts(m.group("ts"), default_tz)
        if ts is not None:
            return LogLine(timestamp=ts, text=m.group("msg"), source=source)

    m = _RFC3164.match(body)
    if m:
        ts = _parse_rfc3164_ts(m.group("ts"), now, default_tz)
        if ts is not None:
            return LogLine(timestamp=ts, text=m.group("msg"), source=source)

    return LogLine(timestamp=now, text=body, source=source)


class DmesgReader:
    """
    Follows the kernel ring buffer through a ``dmesg`` subprocess.
    """

    def __init__(
        self,
        command: Sequence[str] = ("dmesg", "--follow-new", "--time-format=iso"),
        heartbeat_interval: float = 1.0,
        default_tz: tzinfo | None = None,
    ) -> None:
        self.command = list(command)
        self.heartbeat_interval = heartbeat_interval
        self.default_tz = default_tz
        self._process: asyncio.subprocess.Process | None = None

    async def lines(self) -> AsyncIterator[LogLine | None]:
        """
        Yield lines as the kernel logs them, ``None`` while quiet.

        Ends when the subprocess exits.
        """
        logger.info("Following kernel log: %s", " ".join(self.command))
        self._process = await asyncio.create_subprocess_exec(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        proc = self._process
        if proc.stdout is None:
            raise RuntimeError("Kernel log subprocess has no stdout")
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(
                        proc.stdout.readline(), timeout=self.heartbeat_interval
                    )
                except asyncio.TimeoutError:
                    yield None
                    continue
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace")
                if text.strip():
                    yield parse_log_line(text, default_tz=self.default_tz)

            returncode = await proc.wait()
            if returncode != 0:
                stderr = b""
                if proc.stderr is not None:
                    stderr = await proc.stderr.read()
                logger.error(
                    "dmesg exited with status %d: %s",
                    returncode, stderr.decode("utf-8", errors="replace").strip(),
                )
            else:
                logger.info("dmesg exited")
        finally:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            self._process = None

    def stop(self) -> None:
        """Terminate the subprocess if running."""
        if self._process is not None and self._process.returncode is None:
            self._process.terminate()


class FileTailReader:
    """
    Tails a syslog/kern.log style file, following rotation.
    """

    def __init__(
        self,
        path: str | Path,
        start_at_end: bool = True,
        follow: bool = True,
        heartbeat_interval: float = 1.0,
        default_tz: tzinfo | None = None,
    ) -> None:
        """
        Initialize the reader.

        Args:
            path: File to read
            start_at_end: Skip existing content and only report new lines
            follow: Keep waiting for new lines; if False, stop at EOF
            heartbeat_interval: Seconds between polls (and heartbeats) at EOF
            default_tz: Zone for timestamps without an offset
        """
        self.path = Path(path)
        self.start_at_end = start_at_end
        self.follow = follow
        self.heartbeat_interval = heartbeat_interval
        self.default_tz = default_tz
        self._running = False

    def _rotated(self, inode: int, position: int) -> bool:
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            return False
        return stat.st_ino != inode or stat.st_size < position

    async def lines(self) -> AsyncIterator[LogLine | None]:
        """Yield new lines, ``None`` on each idle poll."""
        self._running = True
        f = open(self.path, encoding="utf-8", errors="replace")
        try:
            if self.start_at_end:
                f.seek(0, os.SEEK_END)
            inode = os.fstat(f.fileno()).st_ino
            partial = ""
            logger.info("Tailing %s", self.path)

            while self._running:
                chunk = f.readline()
                if chunk:
                    partial += chunk
                    if not partial.endswith("\n"):
                        continue
                    line, partial = partial, ""
                    if line.strip():
                        yield parse_log_line(line, default_tz=self.default_tz)
                    continue

                if not self.follow:
                    if partial.strip():
                        yield parse_log_line(partial, default_tz=self.default_tz)
                    break

                if self._rotated(inode, f.tell()):
                    logger.info("%s rotated, reopening", self.path)
                    f.close()
                    f = open(self.path, encoding="utf-8", errors="replace")
                    inode = os.fstat(f.fileno()).st_ino
                    continue

                yield None
                await asyncio.sleep(self.heartbeat_interval)
        finally:
            f.close()
            self._running = False

    def stop(self) -> None:
        """Stop tailing after the current poll."""
        self._running = False
