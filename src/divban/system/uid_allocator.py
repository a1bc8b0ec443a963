"""UID and subordinate-ID allocation.

Allocation never caches: every call re-reads the user database and the
subordinate-ID registries so that the caller's lock covers a fresh view.

UID layout:

- below 1000: system users
- 1000-9999: regular users (varies by distribution)
- 10000-59999: divban service users
- 60000 and above: often reserved (``nobody`` and friends)
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..config import SUBUID_MAX_END, UserAllocationSettings
from ..errors import ErrorCode, GeneralError, SubuidRangeExhausted, UidRangeExhausted
from .exec import Runner, run_command
from .fs import read_file_or_empty

FALLBACK_SHELL = "/bin/false"


@dataclass(frozen=True)
class AllocationRange:
    """Half-open ``[start, start + size)`` block of IDs."""

    start: int
    size: int

    @property
    def end(self) -> int:
        """Return the last ID inside the block."""
        return self.start + self.size - 1

    def overlaps(self, other: AllocationRange) -> bool:
        """Return ``True`` when the two blocks share any ID."""
        return self.start <= other.end and other.start <= self.end


@dataclass(frozen=True)
class SubidEntry:
    """One ``user:start:count`` line from ``/etc/subuid`` or ``/etc/subgid``."""

    user: str
    start: int
    count: int

    @property
    def end(self) -> int:
        """Return the last ID delegated by this entry."""
        return self.start + self.count - 1

    def as_range(self) -> AllocationRange:
        """Return the entry as an :class:`AllocationRange`."""
        return AllocationRange(self.start, self.count)


@dataclass(frozen=True)
class PasswdEntry:
    """A parsed ``passwd`` record."""

    name: str
    uid: int
    gid: int
    gecos: str
    home: Path
    shell: str


def parse_passwd_entry(line: str) -> PasswdEntry | None:
    """Parse one passwd line, returning ``None`` when it is malformed."""
    fields = line.strip().split(":")
    if len(fields) < 7:
        return None
    try:
        uid = int(fields[2])
        gid = int(fields[3])
    except ValueError:
        return None
    return PasswdEntry(
        name=fields[0],
        uid=uid,
        gid=gid,
        gecos=fields[4],
        home=Path(fields[5]),
        shell=fields[6],
    )


def parse_passwd_uids(content: str) -> set[int]:
    """Return every numeric UID found in passwd-formatted *content*."""
    uids: set[int] = set()
    for line in content.splitlines():
        if not line.strip() or line.startswith("#"):
            continue
        fields = line.split(":")
        if len(fields) < 3:
            continue
        try:
            uids.add(int(fields[2]))
        except ValueError:
            continue
    return uids


def parse_subid_ranges(content: str) -> list[SubidEntry]:
    """Parse subuid/subgid content, skipping comments and malformed lines."""
    entries: list[SubidEntry] = []
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        fields = stripped.split(":")
        if len(fields) != 3 or not fields[0]:
            continue
        try:
            start = int(fields[1])
            count = int(fields[2])
        except ValueError:
            continue
        if start < 0 or count <= 0:
            continue
        entries.append(SubidEntry(user=fields[0], start=start, count=count))
    return entries


def find_first_available_uid(start: int, end: int, used: Iterable[int]) -> int | None:
    """Return the lowest UID in ``[start, end]`` absent from *used*."""
    taken = set(used)
    for candidate in range(start, end + 1):
        if candidate not in taken:
            return candidate
    return None


def find_gap_for_range(
    ranges: Iterable[AllocationRange],
    range_start: int,
    size: int,
    max_end: int = SUBUID_MAX_END,
) -> int | None:
    """Return the lowest start >= *range_start* fitting *size* IDs between *ranges*."""
    candidate = range_start
    for existing in sorted(ranges, key=lambda item: item.start):
        if candidate + size - 1 < existing.start:
            break
        candidate = max(candidate, existing.end + 1)
    if candidate + size - 1 > max_end:
        return None
    return candidate


@dataclass(slots=True)
class UidAllocator:
    """Read the host's user database and registries to find free IDs.

    The allocator does not lock. Callers hold ``uid-allocation`` around UID
    selection plus account creation, and ``subid-config`` around subordinate
    allocation plus the registry write.
    """

    runner: Runner | None = None
    passwd_path: Path = Path("/etc/passwd")
    subuid_path: Path = Path("/etc/subuid")
    subgid_path: Path = Path("/etc/subgid")
    nologin_paths: Sequence[Path] = field(
        default_factory=lambda: (Path("/usr/sbin/nologin"), Path("/sbin/nologin"))
    )

    def used_uids(self) -> set[int]:
        """Return the union of UIDs from the passwd file and NSS."""
        used = parse_passwd_uids(read_file_or_empty(self.passwd_path))
        result = run_command(["getent", "passwd"], runner=self.runner)
        if result.returncode == 0:
            used |= parse_passwd_uids(result.stdout or "")
        return used

    def allocate_uid(self, settings: UserAllocationSettings) -> int:
        """Return the lowest free UID in the configured range."""
        start, end = settings.uid_range_start, settings.uid_range_end
        uid = find_first_available_uid(start, end, self.used_uids())
        if uid is None:
            raise UidRangeExhausted(
                f"No available UIDs in range {start}-{end}. "
                f"All {end - start + 1} UIDs are in use."
            )
        return uid

    def subid_entries(self) -> list[SubidEntry]:
        """Return entries from both subuid and subgid registries."""
        return [
            *parse_subid_ranges(read_file_or_empty(self.subuid_path)),
            *parse_subid_ranges(read_file_or_empty(self.subgid_path)),
        ]

    def allocate_subuid_range(
        self,
        size: int | None,
        settings: UserAllocationSettings,
    ) -> AllocationRange:
        """Return the lowest free subordinate block of *size* IDs."""
        block = size if size is not None else settings.subuid_range_size
        used = [entry.as_range() for entry in self.subid_entries()]
        start = find_gap_for_range(
            used, settings.subuid_range_start, block, settings.subuid_range_max_end
        )
        if start is None:
            raise SubuidRangeExhausted(
                f"No available subuid range of size {block} "
                f"starting from {settings.subuid_range_start}"
            )
        return AllocationRange(start, block)

    def find_subuid_entry(self, username: str) -> SubidEntry | None:
        """Return the subuid entry recorded for *username*, if any."""
        for entry in parse_subid_ranges(read_file_or_empty(self.subuid_path)):
            if entry.user == username:
                return entry
        return None

    def find_subgid_entry(self, username: str) -> SubidEntry | None:
        """Return the subgid entry recorded for *username*, if any."""
        for entry in parse_subid_ranges(read_file_or_empty(self.subgid_path)):
            if entry.user == username:
                return entry
        return None

    def get_existing_subuid_start(self, username: str) -> int:
        """Return the previously allocated subuid start for *username*."""
        entry = self.find_subuid_entry(username)
        if entry is None:
            raise GeneralError(f"No subuid range found for {username}")
        return entry.start

    def lookup_user(self, username: str) -> PasswdEntry | None:
        """Return the passwd entry for *username* via ``getent``."""
        result = run_command(["getent", "passwd", username], runner=self.runner)
        if result.returncode != 0:
            return None
        for line in (result.stdout or "").splitlines():
            entry = parse_passwd_entry(line)
            if entry is not None and entry.name == username:
                return entry
        return None

    def user_exists(self, username: str) -> bool:
        """Return ``True`` if *username* resolves on this host."""
        return run_command(["id", username], runner=self.runner).returncode == 0

    def get_uid_by_username(self, username: str) -> int:
        """Return the UID reported by ``id -u`` for *username*."""
        result = run_command(["id", "-u", username], runner=self.runner)
        if result.returncode != 0:
            raise GeneralError(f"User {username} not found", ErrorCode.GENERAL_ERROR)
        try:
            return int((result.stdout or "").strip())
        except ValueError as exc:
            raise GeneralError(f"Invalid UID for user {username}") from exc

    def get_nologin_shell(self) -> str:
        """Return the first available non-interactive shell."""
        for path in self.nologin_paths:
            if Path(path).exists():
                return str(path)
        return FALLBACK_SHELL


__all__ = [
    "AllocationRange",
    "PasswdEntry",
    "SubidEntry",
    "UidAllocator",
    "find_first_available_uid",
    "find_gap_for_range",
    "parse_passwd_entry",
    "parse_passwd_uids",
    "parse_subid_ranges",
]
