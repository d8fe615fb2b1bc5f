#!/usr/bin/env python3
"""buildffmpeg.py - builds ffmpeg and its codec stack from source

features:

- Single script which resolves, downloads and builds ffmpeg from source
- Tries the system package manager first for each component and falls back
  to building it from source
- Resolves a sparse version query ('', '7', 'n7.0.2') against the remote
  release tags
- Re-runnable after a failure: working copies are updated in place and
  never deleted

class structure:

ShellCmd
    Project
    PackageManager
        AptPackageManager
        BrewPackageManager
    SourceControl
    PkgConfig
    ProfileUpdater
    AbstractBuilder
        Builder
            NasmBuilder
            FdkAacBuilder
            OpusBuilder
            SrtBuilder
            FFmpegBuilder

FallbackResolver
StageExecutor
FeatureFlagComposer
Pipeline

"""

import argparse
import datetime
import hashlib
import logging
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import tarfile
import zipfile
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Callable, Iterable, Optional, Union
from urllib.request import urlretrieve

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
ShellArgs = Union[str, list[str]]
PackageSets = tuple[tuple[str, ...], ...]
ProbeFn = Callable[["Component"], bool]
InputFn = Callable[[str], str]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

PLATFORM = platform.system()
PY_VER_MINOR = sys.version_info.minor
DEFAULT_PREFIX = os.getenv("BUILDFFMPEG_PREFIX", "/usr/local")
DEFAULT_SOURCES = os.getenv(
    "BUILDFFMPEG_SOURCES", str(Path.home() / "ffmpeg_sources")
)
FFMPEG_REPO_URL = "https://git.ffmpeg.org/ffmpeg.git"
RELEASE_TAG_PATTERN = re.compile(r"^n\d")
VERSION_PATTERN = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")
PRERELEASE_MARKERS = ("dev", "rc", "alpha", "beta")
REQUIRED_SPACE_KB = 2_000_000
MAX_LISTED_MAJORS = 5
MAX_LISTED_MATCHES = 10
# homebrew installs libtoolize as glibtoolize
LIBTOOLIZE = ("libtoolize", "glibtoolize")

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=True)

# ----------------------------------------------------------------------------
# platform detection utilities


class PlatformInfo:
    """Centralized platform detection and configuration"""

    def __init__(self, system: Optional[str] = None) -> None:
        self.system = system or platform.system()
        self.machine = platform.machine()

    @property
    def is_darwin(self) -> bool:
        """Check if running on macOS"""
        return self.system == "Darwin"

    @property
    def is_linux(self) -> bool:
        """Check if running on Linux"""
        return self.system == "Linux"

    @property
    def is_supported(self) -> bool:
        """only apt-based linux and homebrew macos are handled"""
        return self.is_darwin or self.is_linux

    @property
    def cpu_count(self) -> int:
        """number of processing units for `make -j`"""
        return os.cpu_count() or 1

    @property
    def is_root(self) -> bool:
        return hasattr(os, "geteuid") and os.geteuid() == 0


# Global platform info instance
PLATFORM_INFO = PlatformInfo()

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    cyan = "\x1b[36;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        if PY_VER_MINOR > 10:
            duration = datetime.datetime.fromtimestamp(
                record.relativeCreated / 1000, datetime.UTC
            )
        else:
            duration = datetime.datetime.fromtimestamp(record.relativeCreated / 1000)
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# exit codes and custom exceptions


class ExitCode(IntEnum):
    """process exit codes, one per fatal error kind"""

    SUCCESS = 0
    FAILURE = 1
    DEPENDENCY_MISSING = 2
    VERSION_NOT_FOUND = 3
    INTEGRITY_MISMATCH = 4
    STAGE_FAILED = 5
    INSUFFICIENT_SPACE = 6
    INTERRUPTED = 130


class BuildError(Exception):
    """Base exception for build errors"""

    exit_code = ExitCode.FAILURE


class CommandError(BuildError):
    """Exception for command execution errors"""

    pass


class DownloadError(BuildError):
    """Exception for download errors"""

    pass


class ExtractionError(BuildError):
    """Exception for extraction errors"""

    pass


class ValidationError(BuildError):
    """Exception for validation errors"""

    pass


class ResolutionUnavailable(BuildError):
    """A component cannot be acquired by any method on this machine.

    Recoverable for optional components: absorbed into a ResolutionRecord.
    """

    def __init__(self, component: str, reason: str) -> None:
        super().__init__(f"{component}: {reason}")
        self.component = component
        self.reason = reason


class RequiredDependencyMissing(BuildError):
    """A required component resolved as unavailable"""

    exit_code = ExitCode.DEPENDENCY_MISSING

    def __init__(self, record: "ResolutionRecord") -> None:
        super().__init__(
            f"required dependency '{record.component}' is unavailable: {record.detail}"
        )
        self.record = record


class NotFound(BuildError):
    """No release matches the version query"""

    exit_code = ExitCode.VERSION_NOT_FOUND

    def __init__(
        self, query: str, matches: Iterable[str] = (), hint: str = ""
    ) -> None:
        self.query = query
        self.matches = list(matches)
        self.hint = hint
        msg = f"version '{query}' not found in stable releases"
        if hint:
            msg = f"{msg} ({hint})"
        super().__init__(msg)


class AmbiguousQuery(NotFound):
    """The query only partially names one or more releases"""

    def __init__(self, query: str, matches: Iterable[str]) -> None:
        super().__init__(query, matches, hint="use an exact tag or a major number")


class IntegrityMismatch(BuildError):
    """Digest of a fetched artifact differs from its pinned value"""

    exit_code = ExitCode.INTEGRITY_MISMATCH

    def __init__(self, path: Pathlike, expected: str, actual: str) -> None:
        super().__init__(
            f"checksum mismatch for {path}: expected {expected}, got {actual}"
        )
        self.path = Path(path)
        self.expected = expected
        self.actual = actual


class StageFailed(BuildError):
    """A build stage sub-step failed"""

    exit_code = ExitCode.STAGE_FAILED

    def __init__(self, component: str, substep: str, reason: str = "") -> None:
        msg = f"{component} failed during {substep}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.component = component
        self.substep = substep
        self.reason = reason


class InsufficientSpace(BuildError):
    """Not enough free disk space under the sources root"""

    exit_code = ExitCode.INSUFFICIENT_SPACE


# ----------------------------------------------------------------------------
# data model


class Method(Enum):
    """how a component was acquired"""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    UNAVAILABLE = "unavailable"


class Stability(Enum):
    STABLE = "stable"
    PRERELEASE = "prerelease"


class StageState(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    CONFIGURING = "configuring"
    BUILDING = "building"
    INSTALLING = "installing"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class AcquireOutcome(Enum):
    """result of a successful acquire: new copy or existing copy refreshed"""

    FRESH = "fresh"
    UPDATED = "updated"


TRANSITIONS: dict[StageState, tuple[StageState, ...]] = {
    StageState.PENDING: (StageState.FETCHING, StageState.SKIPPED),
    StageState.FETCHING: (StageState.VERIFYING, StageState.FAILED),
    StageState.VERIFYING: (StageState.CONFIGURING, StageState.FAILED),
    StageState.CONFIGURING: (StageState.BUILDING, StageState.FAILED),
    StageState.BUILDING: (StageState.INSTALLING, StageState.FAILED),
    StageState.INSTALLING: (StageState.DONE, StageState.FAILED),
    StageState.DONE: (),
    StageState.FAILED: (),
    StageState.SKIPPED: (),
}


@dataclass(frozen=True)
class Component:
    """A unit of the build.

    `packages` is the primary acquisition method: per platform, a sequence of
    alternative package sets tried in order. `builder` is the secondary
    acquisition method: a Builder subclass that builds from source.
    """

    name: str
    order: int
    builder: Optional[type["Builder"]] = None
    packages: dict[str, PackageSets] = field(
        default_factory=dict, hash=False, compare=False
    )
    required: bool = True
    flags: tuple[str, ...] = ()
    pkg_config: Optional[str] = None
    description: str = ""

    def __repr__(self) -> str:
        return f"<Component '{self.name}'>"

    def primary_for(self, system: str) -> PackageSets:
        """package alternatives for a platform, empty if none exist"""
        return self.packages.get(system, ())

    @property
    def has_secondary(self) -> bool:
        return self.builder is not None


@dataclass(frozen=True)
class ResolutionRecord:
    """outcome of resolving one component's acquisition method"""

    component: str
    method: Method
    probe: Optional[bool] = None
    detail: str = ""

    @property
    def needs_build(self) -> bool:
        return self.method is Method.SECONDARY


@dataclass(frozen=True)
class VersionCandidate:
    """a release tag with its stability classification"""

    identifier: str
    stability: Stability

    @classmethod
    def from_tag(cls, tag: str) -> "VersionCandidate":
        lowered = tag.lower()
        if any(marker in lowered for marker in PRERELEASE_MARKERS):
            return cls(tag, Stability.PRERELEASE)
        return cls(tag, Stability.STABLE)

    @property
    def is_stable(self) -> bool:
        return self.stability is Stability.STABLE

    @property
    def key(self) -> tuple[int, ...]:
        """numeric sort key: n6.1.10 -> (6, 1, 10)"""
        return version_key(self.identifier)

    @property
    def major(self) -> Optional[int]:
        """major component: 7 in n7.0.2"""
        key = self.key
        return key[0] if key else None


@dataclass
class BuildStage:
    """mutable run record of one component"""

    component: Component
    state: StageState = StageState.PENDING
    substep: Optional[str] = None
    acquired: Optional[AcquireOutcome] = None
    reason: str = ""

    @property
    def name(self) -> str:
        return self.component.name

    @property
    def is_settled(self) -> bool:
        """done or skipped: successors may proceed"""
        return self.state in (StageState.DONE, StageState.SKIPPED)

    def advance(self, state: StageState, substep: Optional[str] = None) -> None:
        """move to state, refusing transitions the pipeline never makes"""
        if state not in TRANSITIONS[self.state]:
            raise BuildError(
                f"{self.name}: illegal transition {self.state.value} -> {state.value}"
            )
        self.state = state
        if substep:
            self.substep = substep

    def skip(self, reason: str) -> None:
        self.advance(StageState.SKIPPED)
        self.reason = reason

    def fail(self, reason: str) -> None:
        self.advance(StageState.FAILED)
        self.reason = reason


@dataclass
class PipelineResult:
    """stages, records and composed configuration of one pipeline run"""

    stages: list[BuildStage]
    records: dict[str, ResolutionRecord]
    flags: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    version: Optional[VersionCandidate] = None

    @property
    def succeeded(self) -> bool:
        return all(stage.is_settled for stage in self.stages)

    @property
    def not_attempted(self) -> list[str]:
        return [s.name for s in self.stages if s.state is StageState.PENDING]

    def stage(self, name: str) -> BuildStage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def summary(self) -> list[str]:
        """human readable report lines"""
        lines = []
        for stage in self.stages:
            record = self.records.get(stage.name)
            method = record.method.value if record else "-"
            line = f"{stage.name:<12} {stage.state.value:<11} ({method})"
            if stage.state is StageState.FAILED:
                line += f" at {stage.substep}: {stage.reason}"
            elif stage.reason:
                line += f" {stage.reason}"
            lines.append(line)
        if self.not_attempted:
            lines.append("not attempted: " + ", ".join(self.not_attempted))
        lines.extend(f"warning: {w}" for w in self.warnings)
        return lines


# ----------------------------------------------------------------------------
# version resolution


def version_key(identifier: str) -> tuple[int, ...]:
    """numeric version key of a tag, () if it carries no version"""
    match = VERSION_PATTERN.search(identifier)
    if not match:
        return ()
    return tuple(int(g) for g in match.groups() if g is not None)


def sort_candidates(candidates: Iterable[VersionCandidate]) -> list[VersionCandidate]:
    """ascending by numeric version, identifier breaking ties"""
    return sorted(candidates, key=lambda c: (c.key, c.identifier))


def parse_tags(tags: Iterable[str]) -> set[VersionCandidate]:
    """turn raw tag names into release candidates

    Only `n<digit>...` tags are releases; peeled refs (`tag^{}`) are dropped.
    """
    return {
        VersionCandidate.from_tag(tag)
        for tag in tags
        if RELEASE_TAG_PATTERN.match(tag) and not tag.endswith("^{}")
    }


def latest_by_major(
    candidates: Iterable[VersionCandidate], limit: int = MAX_LISTED_MAJORS
) -> dict[int, VersionCandidate]:
    """newest stable release of each of the last `limit` majors"""
    latest: dict[int, VersionCandidate] = {}
    for candidate in sort_candidates(c for c in candidates if c.is_stable):
        if candidate.major is not None:
            latest[candidate.major] = candidate
    majors = sorted(latest)[-limit:] if limit else []
    return {major: latest[major] for major in majors}


def resolve_version(
    candidates: Iterable[VersionCandidate], query: Optional[str] = ""
) -> VersionCandidate:
    """map a version query to exactly one candidate

    - '' (or None): newest stable release
    - '7': newest stable release of major 7
    - 'n7.0.2': that exact tag, stable or not
    - anything else fails; partial matches are reported, never selected

    Raises:
        NotFound: nothing matches the query
        AmbiguousQuery: the query is a fragment of one or more tags
    """
    pool = set(candidates)
    query = (query or "").strip()
    stable = sort_candidates(c for c in pool if c.is_stable)

    if not query:
        if not stable:
            raise NotFound(query, hint="no stable releases available")
        return stable[-1]

    if re.fullmatch(r"[0-9]+", query):
        major = int(query)
        in_major = [c for c in stable if c.major == major]
        if not in_major:
            majors = sorted({c.major for c in stable if c.major is not None})
            raise NotFound(
                query,
                hint="available major versions: " + " ".join(str(m) for m in majors),
            )
        return in_major[-1]

    for candidate in pool:
        if candidate.identifier == query:
            return candidate

    matches = [c.identifier for c in sort_candidates(pool) if query in c.identifier]
    if matches:
        raise AmbiguousQuery(query, matches[:MAX_LISTED_MATCHES])
    raise NotFound(query, hint="use format like: n7.0.2, n6.1.1, or just: 7, 6")


def fetch_candidates(source_control: "SourceControl", repo: str) -> set[VersionCandidate]:
    """fetch the release candidates of repo, fresh on every call"""
    return parse_tags(source_control.list_tags(repo))


def prompt_version(
    candidates: Iterable[VersionCandidate],
    input_fn: InputFn = input,
    output: Callable[[str], None] = print,
) -> VersionCandidate:
    """interactive version selection, re-prompting until a query resolves"""
    pool = set(candidates)
    stable = sort_candidates(c for c in pool if c.is_stable)
    latest = stable[-1].identifier if stable else "none"
    output("=== FFmpeg Version Selection ===")
    output(f"Latest stable version: {latest}")
    output("Available major versions:")
    for major, candidate in latest_by_major(pool).items():
        output(f"  {major} -> {candidate.identifier}")
    output("Enter version to install:")
    output("  - Full version (e.g., n7.0.2, n6.1.1)")
    output("  - Major version number (e.g., 7 for latest n7.x.y)")
    output(f"  - Press Enter for latest stable ({latest})")
    while True:
        query = input_fn("Version: ")
        try:
            return resolve_version(pool, query)
        except NotFound as e:
            output(f"Error: {e}")
            if e.matches:
                output(f"Available versions that contain '{e.query}':")
                for match in e.matches:
                    output(f"  {match}")


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: ShellArgs,
        cwd: Pathlike = ".",
        env: Optional[dict[str, str]] = None,
    ) -> None:
        """Run shell command within working directory

        Args:
            shellcmd: Command as string (will be split safely) or list of args
            cwd: Working directory for command execution
            env: Optional replacement environment

        Raises:
            CommandError: If command execution fails
        """
        self.log.info(shellcmd if isinstance(shellcmd, str) else " ".join(shellcmd))
        try:
            if isinstance(shellcmd, str):
                if any(char in shellcmd for char in ["|", ">", "<", "&", ";"]):
                    subprocess.check_call(shellcmd, shell=True, cwd=str(cwd), env=env)
                else:
                    subprocess.check_call(shlex.split(shellcmd), cwd=str(cwd), env=env)
            else:
                subprocess.check_call(shellcmd, cwd=str(cwd), env=env)
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(f"Command failed: {shellcmd}") from e
        except OSError as e:
            self.log.critical("Command could not run: %s", e)
            raise CommandError(f"Command could not run: {shellcmd}") from e

    def succeeds(self, shellcmd: list[str], env: Optional[dict[str, str]] = None) -> bool:
        """run a command quietly and report whether it exited with 0"""
        self.log.debug(" ".join(shellcmd))
        try:
            returncode = subprocess.call(
                shellcmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=env,
            )
        except OSError:
            return False
        return returncode == 0

    def get(
        self,
        shellcmd: ShellArgs,
        cwd: Pathlike = ".",
        env: Optional[dict[str, str]] = None,
    ) -> str:
        """get output of shellcmd"""
        args = shellcmd.split() if isinstance(shellcmd, str) else shellcmd
        try:
            return subprocess.check_output(
                args, encoding="utf8", cwd=str(cwd), env=env
            ).strip()
        except (subprocess.CalledProcessError, OSError) as e:
            raise CommandError(f"Command failed: {' '.join(args)}") from e

    def download(self, url: str, tofolder: Optional[Pathlike] = None) -> Path:
        """Download a file from a url to an optional folder

        The file is fetched under a `.part` name and only renamed when
        complete, so an interrupted download never looks cached.

        Raises:
            DownloadError: If download fails
        """
        _path = Path(os.path.basename(url))
        if tofolder:
            _path = Path(tofolder).joinpath(_path)
        partial = _path.with_name(_path.name + ".part")
        try:
            self.log.info("Downloading %s...", os.path.basename(url))
            urlretrieve(url, filename=partial)
            partial.replace(_path)
            self.log.info("Download complete: %s", _path.name)
            return _path
        except Exception as e:
            raise DownloadError(f"Failed to download {url}: {e}") from e
        finally:
            if partial.exists():
                partial.unlink()

    def digest(self, filepath: Pathlike, algo: str = "sha256") -> str:
        """hex digest of a file"""
        hash_func = hashlib.new(algo)
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                hash_func.update(chunk)
        return hash_func.hexdigest()

    def extract(self, archive: Pathlike, tofolder: Pathlike = ".") -> None:
        """Extract archive

        Raises:
            ExtractionError: If extraction fails or file type unsupported
        """
        if tarfile.is_tarfile(archive):
            try:
                with tarfile.open(archive) as f:
                    self.log.info("Extracting %s", os.path.basename(str(archive)))
                    if sys.version_info.minor >= 12:
                        f.extractall(tofolder, filter="data")
                    else:
                        self._safe_extract_tar(f, tofolder)
            except Exception as e:
                raise ExtractionError(f"Failed to extract {archive}: {e}") from e
        elif zipfile.is_zipfile(archive):
            try:
                self.log.info("Extracting %s", os.path.basename(str(archive)))
                with zipfile.ZipFile(archive) as f:
                    f.extractall(tofolder)
            except Exception as e:
                raise ExtractionError(f"Failed to extract {archive}: {e}") from e
        else:
            raise ExtractionError(f"Unsupported archive type: {archive}")

    def _safe_extract_tar(self, tar: tarfile.TarFile, path: Pathlike) -> None:
        """Safely extract tarfile for Python < 3.12 (CVE-2007-4559 mitigation)

        Members resolving outside `path` abort the extraction; symlinks
        pointing outside it are skipped.
        """
        dest_path = Path(path).resolve()

        def inside(target: Path) -> bool:
            return target == dest_path or dest_path in target.parents

        members = []
        for member in tar.getmembers():
            if not inside((dest_path / member.name).resolve()):
                raise ExtractionError(f"Path traversal detected: {member.name}")
            if member.issym():
                link_target = (dest_path / member.name).parent / member.linkname
                if not inside(link_target.resolve()):
                    self.log.warning(
                        "Skipping suspicious symlink: %s -> %s",
                        member.name,
                        member.linkname,
                    )
                    continue
            elif member.islnk():
                if not inside((dest_path / member.linkname).resolve()):
                    raise ExtractionError(f"Path traversal detected: {member.linkname}")
            members.append(member)
        tar.extractall(path, members=members)

    def fail(self, msg: str, *args: str) -> str:
        """Raise BuildError with formatted message"""
        formatted_msg = msg % args if args else msg
        self.log.critical(formatted_msg)
        raise BuildError(formatted_msg)

    def which(self, executable: str) -> Optional[str]:
        return shutil.which(executable)

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)


# ----------------------------------------------------------------------------
# external collaborators


class Project(ShellCmd):
    """Utility class to hold project directory structure"""

    def __init__(
        self, root: Optional[Pathlike] = None, prefix: Optional[Pathlike] = None
    ) -> None:
        self.root = Path(root or DEFAULT_SOURCES).expanduser()
        self.downloads = self.root
        self.prefix = Path(prefix or DEFAULT_PREFIX).expanduser()
        self.bin = self.prefix / "bin"
        self.lib = self.prefix / "lib"
        self.pkgconfig = self.lib / "pkgconfig"
        self.log = logging.getLogger(self.__class__.__name__)

    def setup(self) -> None:
        """create the sources root"""
        self.makedirs(self.root)

    def working_copy(self, name: str) -> Path:
        """source tree of a component, reused across runs"""
        return self.root / name

    def _nearest_existing(self, path: Path) -> Path:
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def available_kb(self) -> int:
        """free space in KB on the filesystem holding the sources root"""
        return shutil.disk_usage(self._nearest_existing(self.root)).free // 1024

    def check_space(self, required_kb: int = REQUIRED_SPACE_KB) -> None:
        available = self.available_kb()
        if available < required_kb:
            raise InsufficientSpace(
                f"Insufficient disk space. Required: ~{required_kb // 1024 // 1024}GB, "
                f"Available: {available / 1024 / 1024:.1f}GB"
            )

    @property
    def needs_sudo(self) -> bool:
        """installing into prefix needs elevated rights"""
        if PLATFORM_INFO.is_root:
            return False
        return not os.access(self._nearest_existing(self.prefix), os.W_OK)

    def environ(self) -> dict[str, str]:
        """environment with the prefix visible to later builds"""
        env = dict(os.environ)
        env["PATH"] = os.pathsep.join([str(self.bin), env.get("PATH", "")])
        pkg_paths = [str(self.pkgconfig)]
        if env.get("PKG_CONFIG_PATH"):
            pkg_paths.append(env["PKG_CONFIG_PATH"])
        env["PKG_CONFIG_PATH"] = os.pathsep.join(pkg_paths)
        return env


class PackageManager(ShellCmd):
    """System package manager: the primary acquisition method.

    `install` makes a single attempt and reports success as a bool; failure
    is never raised since it is not fatal for optional components.
    """

    executable: str = ""

    def __init__(self, use_sudo: bool = False) -> None:
        self.use_sudo = use_sudo
        self.log = logging.getLogger(self.__class__.__name__)
        self._updated = False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"

    @property
    def available(self) -> bool:
        return bool(self.executable) and self.which(self.executable) is not None

    def _privileged(self, args: list[str]) -> list[str]:
        return ["sudo", *args] if self.use_sudo else args

    def update_command(self) -> Optional[list[str]]:
        return None

    def install_command(self, pkgs: tuple[str, ...]) -> list[str]:
        raise NotImplementedError

    def install(self, *pkgs: str) -> bool:
        """install pkgs, True on success"""
        if not self.available:
            self.log.debug("%s not found", self.executable or "package manager")
            return False
        if not self._updated:
            update = self.update_command()
            if update and not self.succeeds(self._privileged(update)):
                self.log.warning("package index update failed")
            self._updated = True
        self.log.info("installing: %s", " ".join(pkgs))
        return self.succeeds(self._privileged(self.install_command(pkgs)))


class AptPackageManager(PackageManager):
    """debian/ubuntu packages via apt-get"""

    executable = "apt-get"

    def update_command(self) -> Optional[list[str]]:
        return ["apt-get", "update", "-qq"]

    def install_command(self, pkgs: tuple[str, ...]) -> list[str]:
        return ["apt-get", "-y", "install", *pkgs]


class BrewPackageManager(PackageManager):
    """macos packages via homebrew"""

    executable = "brew"

    def install_command(self, pkgs: tuple[str, ...]) -> list[str]:
        return ["brew", "install", *pkgs]


def get_package_manager(info: PlatformInfo = PLATFORM_INFO) -> PackageManager:
    """package manager matching the platform"""
    if info.is_darwin:
        return BrewPackageManager()
    if info.is_linux:
        return AptPackageManager(use_sudo=not info.is_root)
    raise NotImplementedError(f"platform not supported: {info.system}")


class SourceControl(ShellCmd):
    """git operations against the source host. Failures are fatal."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def list_tags(self, repo: str) -> set[str]:
        """tag names of a remote repository"""
        self.log.info("Fetching available tags from %s", repo)
        output = self.get(["git", "ls-remote", "--tags", repo])
        tags = set()
        for line in output.splitlines():
            _, _, ref = line.partition("\t")
            if ref.startswith("refs/tags/"):
                tags.add(ref[len("refs/tags/"):])
        return tags

    def is_working_copy(self, dest: Pathlike) -> bool:
        return (Path(dest) / ".git").exists()

    def clone(
        self,
        repo: str,
        dest: Pathlike,
        branch: Optional[str] = None,
        depth: Optional[int] = 1,
    ) -> None:
        """clone repo into dest"""
        if not repo.startswith(("https://", "http://", "git://", "ssh://", "git@")):
            raise ValidationError(f"Invalid git URL: {repo}")
        _cmds = ["git", "clone"]
        if depth:
            _cmds.extend(["--depth", str(depth)])
        if branch:
            _cmds.extend(["--branch", branch])
        _cmds.extend([repo, str(dest)])
        self.cmd(_cmds)

    def pull(self, dest: Pathlike) -> None:
        """update a branch working copy in place"""
        self.cmd(["git", "-C", str(dest), "pull"])

    def fetch_tag(self, dest: Pathlike, tag: str) -> None:
        """make tag available in an existing (possibly shallow) working copy"""
        self.cmd(
            ["git", "-C", str(dest), "fetch", "--depth", "1", "origin", "tag", tag]
        )

    def checkout(self, dest: Pathlike, ref: str) -> None:
        self.cmd(["git", "-C", str(dest), "checkout", ref])


class PkgConfig(ShellCmd):
    """availability probe for installed libraries"""

    def __init__(self, project: Optional[Project] = None) -> None:
        self.project = project or Project()
        self.log = logging.getLogger(self.__class__.__name__)

    def exists(self, module: str) -> bool:
        return self.succeeds(
            ["pkg-config", "--exists", module], env=self.project.environ()
        )

    def probe(self, component: Component) -> bool:
        """True when the component's pkg-config module is installed"""
        if not component.pkg_config:
            return True
        return self.exists(component.pkg_config)


class ProfileUpdater(ShellCmd):
    """idempotently puts the prefix bin dir on PATH in shell rc files"""

    def __init__(self, bin_dir: Pathlike, rc_files: Optional[list[Path]] = None) -> None:
        self.bin_dir = Path(bin_dir)
        if rc_files is None:
            rc_files = [Path.home() / ".bashrc", Path.home() / ".zshrc"]
        self.rc_files = rc_files
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def export_line(self) -> str:
        return f'export PATH="{self.bin_dir}:$PATH"'

    def update(self) -> list[Path]:
        """append the export line to existing rc files lacking it"""
        changed = []
        for rc_file in self.rc_files:
            if not rc_file.exists():
                continue
            if self.export_line in rc_file.read_text(encoding="utf8"):
                continue
            with open(rc_file, "a", encoding="utf8") as f:
                f.write(f"\n{self.export_line}\n")
            self.log.info("Added %s to PATH in %s", self.bin_dir, rc_file)
            changed.append(rc_file)
        return changed


# ----------------------------------------------------------------------------
# builder classes


class AbstractBuilder(ShellCmd):
    """Abstract builder class: the secondary acquisition method.

    A builder either tracks a git repository (`repo_url`) or a pinned release
    archive (`download_url_template` plus `sha256`). Its sub-steps are run in
    order by the StageExecutor.
    """

    name: str
    version: str = ""
    repo_url: str = ""
    download_archive_template: str = ""
    download_url_template: str = ""
    sha256: Optional[str] = None
    # an entry is a tool name or a tuple of interchangeable tool names
    prerequisites: list[Union[str, tuple[str, ...]]] = []
    config_options: list[str] = []

    def __init__(
        self,
        version: Optional[str] = None,
        project: Optional[Project] = None,
        source_control: Optional[SourceControl] = None,
        jobs: Optional[int] = None,
    ) -> None:
        self.version = version or self.version
        self.project = project or Project()
        self.source_control = source_control or SourceControl()
        self.jobs = jobs or PLATFORM_INFO.cpu_count
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        if self.version:
            return f"<{self.__class__.__name__} '{self.name}-{self.version}'>"
        return f"<{self.__class__.__name__} '{self.name}'>"

    @classmethod
    def missing_prerequisites(cls) -> list[str]:
        """build tools needed by this builder but absent from PATH"""
        missing = []
        for tool in cls.prerequisites:
            names = (tool,) if isinstance(tool, str) else tool
            if all(shutil.which(name) is None for name in names):
                missing.append("/".join(names))
        return missing

    @property
    def is_archive(self) -> bool:
        return bool(self.download_url_template)

    @property
    def download_archive(self) -> str:
        """return filename of archive to be downloaded"""
        return self.download_archive_template.format(ver=self.version)

    @property
    def download_url(self) -> str:
        """return download url with version interpolated"""
        return self.download_url_template.format(
            archive=self.download_archive, ver=self.version
        )

    @property
    def downloaded_archive(self) -> Path:
        """return path to downloaded archive"""
        return self.project.downloads / self.download_archive

    @property
    def archive_is_downloaded(self) -> bool:
        return self.downloaded_archive.exists()

    @property
    def src_dir(self) -> Path:
        """return source folder of build target"""
        if self.is_archive:
            return self.project.root / f"{self.name}-{self.version}"
        return self.project.working_copy(self.name)

    @property
    def build_dir(self) -> Path:
        """folder make runs in"""
        return self.src_dir

    @property
    def prefix(self) -> Path:
        return self.project.prefix

    def privileged(self, args: list[str]) -> list[str]:
        return ["sudo", *args] if self.project.needs_sudo else args

    def acquire(self) -> AcquireOutcome:
        """fetch sources"""
        raise NotImplementedError

    def verify(self) -> None:
        """check fetched sources"""

    def configure(self) -> None:
        """configure build"""

    def build(self) -> None:
        """build target"""

    def install(self) -> None:
        """install target"""


class Builder(AbstractBuilder):
    """concrete builder class: configure, make, make install"""

    prerequisites = ["make"]

    def acquire(self) -> AcquireOutcome:
        """clone or download on first run, update in place afterwards"""
        self.project.setup()
        if self.is_archive:
            if self.archive_is_downloaded:
                self.log.info("Using cached archive: %s", self.downloaded_archive)
                return AcquireOutcome.UPDATED
            self.download(self.download_url, tofolder=self.project.downloads)
            return AcquireOutcome.FRESH
        if self.source_control.is_working_copy(self.src_dir):
            self.source_control.pull(self.src_dir)
            return AcquireOutcome.UPDATED
        self.source_control.clone(self.repo_url, self.src_dir)
        return AcquireOutcome.FRESH

    def verify(self) -> None:
        """compare the archive digest against the pinned value"""
        if not self.sha256:
            self.log.debug("%s has no pinned artifact", self.name)
            return
        actual = self.digest(self.downloaded_archive)
        if actual.lower() != self.sha256.lower():
            self.log.critical("%s checksum verification failed!", self.name)
            raise IntegrityMismatch(self.downloaded_archive, self.sha256, actual)
        self.log.info("%s checksum verified", self.download_archive)

    def unpack(self) -> None:
        """extract a verified archive unless already extracted"""
        if not self.is_archive or self.src_dir.exists():
            return
        self.extract(self.downloaded_archive, tofolder=self.project.root)
        if not self.src_dir.exists():
            raise ExtractionError(f"could not extract from {self.downloaded_archive}")

    def bootstrap(self) -> None:
        """generate the configure script if needed"""

    def configure(self) -> None:
        self.unpack()
        self.bootstrap()
        self.log.info("Configuring %s...", self.name)
        self.cmd(
            ["./configure", f"--prefix={self.prefix}", *self.config_options],
            cwd=self.src_dir,
            env=self.project.environ(),
        )

    def build(self) -> None:
        self.log.info("Building %s (using %d jobs)...", self.name, self.jobs)
        self.cmd(["make", f"-j{self.jobs}"], cwd=self.build_dir, env=self.project.environ())

    def install(self) -> None:
        self.cmd(self.privileged(["make", "install"]), cwd=self.build_dir)
        if PLATFORM_INFO.is_linux:
            self.cmd(self.privileged(["ldconfig"]))
        self.log.info("%s installed successfully!", self.name)


class NasmBuilder(Builder):
    """nasm assembler from a pinned release archive"""

    name = "nasm"
    version = "2.16.03"
    download_archive_template = "nasm-{ver}.tar.bz2"
    download_url_template = "https://www.nasm.us/pub/nasm/releasebuilds/{ver}/{archive}"
    sha256 = "bef3de159bcd61adf98bb7cc87ee9046e944644ad76b7633f18ab063edb29e57"
    prerequisites = ["make", "autoconf"]

    def bootstrap(self) -> None:
        if not (self.src_dir / "configure").exists():
            self.cmd(["./autogen.sh"], cwd=self.src_dir)


class FdkAacBuilder(Builder):
    """fdk-aac aac codec library"""

    name = "fdk-aac"
    repo_url = "https://github.com/mstorsjo/fdk-aac"
    prerequisites = ["git", "make", "autoreconf", LIBTOOLIZE]
    config_options = ["--enable-shared"]

    def bootstrap(self) -> None:
        self.cmd(["autoreconf", "-fiv"], cwd=self.src_dir)


class OpusBuilder(Builder):
    """opus codec library"""

    name = "opus"
    repo_url = "https://github.com/xiph/opus.git"
    prerequisites = ["git", "make", "autoconf", LIBTOOLIZE]
    config_options = ["--enable-shared"]

    def bootstrap(self) -> None:
        self.cmd(["./autogen.sh"], cwd=self.src_dir)


class SrtBuilder(Builder):
    """srt transport library, cmake based"""

    name = "srt"
    repo_url = "https://github.com/Haivision/srt.git"
    prerequisites = ["git", "make", "cmake"]

    @property
    def build_dir(self) -> Path:
        return self.src_dir / "build"

    def configure(self) -> None:
        self.makedirs(self.build_dir)
        options = [
            f"-DCMAKE_INSTALL_PREFIX={self.prefix}",
            "-DENABLE_SHARED=ON",
            "-DENABLE_STATIC=OFF",
        ]
        if PLATFORM_INFO.is_linux:
            options.append("-DUSE_OPENSSL_PC=OFF")
        self.log.info("Configuring %s...", self.name)
        self.cmd(["cmake", *options, ".."], cwd=self.build_dir, env=self.project.environ())


class FFmpegBuilder(Builder):
    """ffmpeg at a resolved release tag, configured with composed flags"""

    name = "ffmpeg"
    repo_url = FFMPEG_REPO_URL
    prerequisites = ["git", "make"]
    system_backup = Path("/usr/bin/ffmpeg.backup")

    def __init__(self, *args, flags: Optional[list[str]] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.flags = list(flags or [])

    def acquire(self) -> AcquireOutcome:
        """shallow clone at the release tag, or fetch and check it out"""
        if not self.version:
            self.fail("no ffmpeg version selected")
        self.project.setup()
        if self.source_control.is_working_copy(self.src_dir):
            self.source_control.fetch_tag(self.src_dir, self.version)
            outcome = AcquireOutcome.UPDATED
        else:
            self.source_control.clone(self.repo_url, self.src_dir, branch=self.version)
            outcome = AcquireOutcome.FRESH
        self.log.info("Checking out FFmpeg version: %s", self.version)
        self.source_control.checkout(self.src_dir, self.version)
        return outcome

    def platform_options(self) -> list[str]:
        """configure options depending on the host platform"""
        cflags = "-fPIC"
        options = []
        if PLATFORM_INFO.is_darwin:
            brew_prefix = self.get(["brew", "--prefix"])
            cflags = f"-I{brew_prefix}/include -fPIC"
            options.append(f"--extra-ldflags=-L{brew_prefix}/lib")
        options.insert(0, f"--extra-cflags={cflags}")
        options.extend(["--enable-shared", "--enable-gpl"])
        if PLATFORM_INFO.is_linux:
            options.append("--enable-gnutls")
        return options

    def configure_options(self) -> list[str]:
        return [
            f"--prefix={self.prefix}",
            *self.platform_options(),
            *self.flags,
            "--enable-nonfree",
            "--enable-version3",
        ]

    def configure(self) -> None:
        self.log.info("Configuring FFmpeg %s...", self.version)
        self.cmd(
            ["./configure", *self.configure_options()],
            cwd=self.src_dir,
            env=self.project.environ(),
        )

    @property
    def executable(self) -> Path:
        return self.prefix / "bin" / "ffmpeg"

    def install(self) -> None:
        super().install()
        self.link_alternate()
        self.check_install()

    def alternate_ffmpeg(self) -> Optional[tuple[Path, Path]]:
        """a previously installed ffmpeg and the link that keeps it reachable"""
        if PLATFORM_INFO.is_linux:
            target = self.system_backup
            link = "ffmpeg-system"
        elif PLATFORM_INFO.is_darwin:
            try:
                target = Path(self.get(["brew", "--prefix", "ffmpeg"])) / "bin" / "ffmpeg"
            except CommandError:
                return None
            link = "ffmpeg-brew"
        else:
            return None
        if not target.is_file():
            return None
        return target, self.prefix / "bin" / link

    def link_alternate(self) -> None:
        alternate = self.alternate_ffmpeg()
        if alternate is None:
            return
        target, link = alternate
        self.log.info("Creating '%s' command for accessing %s", link.name, target)
        self.cmd(self.privileged(["ln", "-sf", str(target), str(link)]))

    def check_install(self) -> None:
        """the installed binary must start"""
        self.cmd([str(self.executable), "-version"], env=self.project.environ())


# ----------------------------------------------------------------------------
# component table

BUILD_TOOLS_APT = (
    "autoconf", "automake", "build-essential", "cmake", "git-core", "libass-dev",
    "libfreetype6-dev", "libgnutls28-dev", "libsdl2-dev", "libtool", "libva-dev",
    "libvdpau-dev", "libxcb1-dev", "libxcb-shm0-dev", "libxcb-xfixes0-dev",
    "meson", "ninja-build", "pkg-config", "texinfo", "wget", "yasm",
    "zlib1g-dev", "libssl-dev", "libcrypto++-dev",
)
BUILD_TOOLS_BREW = (
    "autoconf", "automake", "cmake", "git", "libtool", "pkg-config", "yasm",
    "libass", "freetype", "sdl2",
)
CODECS_APT = (
    "libmp3lame-dev", "libopencore-amrnb-dev", "libopencore-amrwb-dev",
    "libspeex-dev", "libtwolame-dev", "libvorbis-dev",
)
CODECS_BREW = ("lame", "opencore-amr", "speex", "twolame", "libvorbis")

COMPONENTS: tuple[Component, ...] = (
    Component(
        name="build-tools",
        order=0,
        packages={"Linux": (BUILD_TOOLS_APT,), "Darwin": (BUILD_TOOLS_BREW,)},
        description="compilers and build tools",
    ),
    Component(
        name="codecs",
        order=1,
        packages={"Linux": (CODECS_APT,), "Darwin": (CODECS_BREW,)},
        flags=(
            "--enable-libmp3lame",
            "--enable-libvorbis",
            "--enable-libspeex",
            "--enable-libtwolame",
            "--enable-libopencore-amrnb",
            "--enable-libopencore-amrwb",
        ),
        description="MP3, Ogg Vorbis, Speex, MP2 and AMR codecs",
    ),
    Component(
        name="nasm",
        order=2,
        builder=NasmBuilder,
        packages={"Darwin": (("nasm",),)},
        description="assembler",
    ),
    Component(
        name="fdk-aac",
        order=3,
        builder=FdkAacBuilder,
        flags=("--enable-libfdk-aac",),
        description="High-quality AAC",
    ),
    Component(
        name="opus",
        order=4,
        builder=OpusBuilder,
        packages={"Darwin": (("opus",),)},
        flags=("--enable-libopus",),
        description="Modern codec for streaming",
    ),
    Component(
        name="srt",
        order=5,
        builder=SrtBuilder,
        packages={
            "Linux": (("libsrt-openssl-dev",), ("libsrt-gnutls-dev",)),
            "Darwin": (("srt",),),
        },
        required=False,
        flags=("--enable-libsrt",),
        pkg_config="srt",
        description="Secure Reliable Transport",
    ),
    Component(
        name="ffmpeg",
        order=6,
        builder=FFmpegBuilder,
        description="media framework",
    ),
)


# ----------------------------------------------------------------------------
# orchestration


class FallbackResolver:
    """tries the package manager, then checks a source build is feasible"""

    def __init__(
        self,
        package_manager: PackageManager,
        probe: Optional[ProbeFn] = None,
        system: str = PLATFORM,
    ) -> None:
        self.package_manager = package_manager
        self.probe = probe
        self.system = system
        self.log = logging.getLogger(self.__class__.__name__)

    def resolve(self, component: Component) -> ResolutionRecord:
        alternatives = component.primary_for(self.system)
        for pkgs in alternatives:
            if self.package_manager.install(*pkgs):
                self.log.info("%s installed from package manager", component.name)
                return ResolutionRecord(
                    component.name,
                    Method.PRIMARY,
                    probe=self.probe(component) if self.probe else True,
                    detail="packaged: " + " ".join(pkgs),
                )
        if alternatives and component.has_secondary:
            self.log.info(
                "%s not available from package manager, will build from source",
                component.name,
            )
        try:
            self.check_secondary(component)
        except ResolutionUnavailable as e:
            if component.required:
                self.log.error("%s", e)
            else:
                self.log.info("%s, continuing without it", e)
            return ResolutionRecord(
                component.name, Method.UNAVAILABLE, probe=False, detail=e.reason
            )
        return ResolutionRecord(
            component.name, Method.SECONDARY, detail="built from source"
        )

    def check_secondary(self, component: Component) -> None:
        """prerequisites of a source build, without building

        Raises:
            ResolutionUnavailable: the component cannot be built here
        """
        if component.builder is None:
            raise ResolutionUnavailable(
                component.name, "package installation failed and no source build exists"
            )
        missing = component.builder.missing_prerequisites()
        if missing:
            raise ResolutionUnavailable(
                component.name, "missing build tools: " + ", ".join(missing)
            )


BuilderFactory = Callable[[Component], AbstractBuilder]


class StageExecutor:
    """runs one stage per component, in order, aborting on first failure"""

    SUBSTEPS: tuple[tuple[StageState, str], ...] = (
        (StageState.FETCHING, "acquire"),
        (StageState.VERIFYING, "verify"),
        (StageState.CONFIGURING, "configure"),
        (StageState.BUILDING, "build"),
        (StageState.INSTALLING, "install"),
    )

    def __init__(
        self, records: dict[str, ResolutionRecord], builder_factory: BuilderFactory
    ) -> None:
        self.records = records
        self.builder_factory = builder_factory
        self.result: Optional[PipelineResult] = None
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self, components: Iterable[Component]) -> PipelineResult:
        """
        Raises:
            StageFailed: a configure, build or install step failed
            IntegrityMismatch: a pinned artifact failed verification
        """
        stages = [BuildStage(c) for c in sorted(components, key=lambda c: c.order)]
        self.result = PipelineResult(stages=stages, records=dict(self.records))
        for index, stage in enumerate(stages):
            record = self.records.get(stage.name)
            if record is None or not record.needs_build:
                method = record.method.value if record else "unresolved"
                self.log.info("skipping %s (%s)", stage.name, method)
                stage.skip(record.detail if record else "")
                continue
            unsettled = [s.name for s in stages[:index] if not s.is_settled]
            if unsettled:
                raise BuildError(
                    f"{stage.name} cannot run before: {', '.join(unsettled)}"
                )
            self.run_stage(stage)
        return self.result

    def run_stage(self, stage: BuildStage) -> None:
        self.log.info("Building %s...", stage.name)
        builder = self.builder_factory(stage.component)
        for state, substep in self.SUBSTEPS:
            stage.advance(state, substep)
            try:
                outcome = getattr(builder, substep)()
            except IntegrityMismatch as e:
                stage.fail(str(e))
                raise
            except (BuildError, OSError) as e:
                stage.fail(str(e))
                raise StageFailed(stage.name, substep, str(e)) from e
            if substep == "acquire":
                stage.acquired = outcome
        stage.advance(StageState.DONE)
        self.log.info("%s done", stage.name)


class FeatureFlagComposer:
    """ffmpeg configure flags from the components that actually resolved"""

    def __init__(self, components: Iterable[Component], probe: ProbeFn) -> None:
        self.components = sorted(components, key=lambda c: c.order)
        self.probe = probe
        self.warnings: list[str] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def compose(self, records: Iterable[ResolutionRecord]) -> list[str]:
        by_name = {record.component: record for record in records}
        self.warnings = []
        flags: list[str] = []
        for component in self.components:
            if not component.flags:
                continue
            if component.required:
                flags.extend(component.flags)
                continue
            record = by_name.get(component.name)
            if record is None or record.method is Method.UNAVAILABLE:
                self.degrade(component, "unavailable on this system")
                continue
            # a record can be stale relative to what ended up installed
            if component.pkg_config and not self.probe(component):
                self.degrade(component, "not found by pkg-config")
                continue
            flags.extend(component.flags)
        return flags

    def degrade(self, component: Component, reason: str) -> None:
        warning = f"{component.name} ({component.description}) disabled: {reason}"
        self.log.info(warning)
        self.warnings.append(warning)


class Pipeline:
    """Pipeline driver: resolve, select version, build, compose, report."""

    def __init__(
        self,
        components: Iterable[Component] = COMPONENTS,
        project: Optional[Project] = None,
        package_manager: Optional[PackageManager] = None,
        source_control: Optional[SourceControl] = None,
        probe: Optional[ProbeFn] = None,
        query: Optional[str] = "",
        input_fn: Optional[InputFn] = None,
        jobs: Optional[int] = None,
        check_space: bool = True,
        update_profile: bool = False,
        system: str = PLATFORM,
    ) -> None:
        self.components = sorted(components, key=lambda c: c.order)
        self.project = project or Project()
        self.package_manager = package_manager or get_package_manager()
        self.source_control = source_control or SourceControl()
        self.probe = probe or PkgConfig(self.project).probe
        self.query = query
        self.input_fn = input_fn
        self.jobs = jobs or PLATFORM_INFO.cpu_count
        self.check_space = check_space
        self.update_profile = update_profile
        self.system = system
        self.version: Optional[VersionCandidate] = None
        self.records: dict[str, ResolutionRecord] = {}
        self.composer = FeatureFlagComposer(self.components, self.probe)
        self.flags: list[str] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def resolve_dependencies(self) -> dict[str, ResolutionRecord]:
        """resolve every component in order

        Raises:
            RequiredDependencyMissing: at the first required component
                with no acquisition method
        """
        resolver = FallbackResolver(self.package_manager, self.probe, self.system)
        records: dict[str, ResolutionRecord] = {}
        for component in self.components:
            record = resolver.resolve(component)
            records[component.name] = record
            if component.required and record.method is Method.UNAVAILABLE:
                raise RequiredDependencyMissing(record)
        self.records = records
        return records

    def resolve_version(self) -> VersionCandidate:
        candidates = fetch_candidates(self.source_control, FFMPEG_REPO_URL)
        if self.input_fn is not None:
            version = prompt_version(candidates, self.input_fn)
        else:
            version = resolve_version(candidates, self.query)
        self.log.info("Selected FFmpeg version: %s", version.identifier)
        self.version = version
        return version

    def make_builder(self, component: Component) -> AbstractBuilder:
        """builder for a stage, created when the stage starts"""
        if component.builder is None:
            raise BuildError(f"{component.name} has no source build")
        kwargs = dict(
            project=self.project, source_control=self.source_control, jobs=self.jobs
        )
        if issubclass(component.builder, FFmpegBuilder):
            # every predecessor is settled here, so probes see the final state
            self.flags = self.composer.compose(self.records.values())
            version = self.version.identifier if self.version else None
            return component.builder(version=version, flags=self.flags, **kwargs)
        return component.builder(**kwargs)

    def run(self) -> PipelineResult:
        """
        Raises:
            BuildError: any fatal error, after the partial summary is logged
        """
        if self.check_space:
            self.project.check_space()
        self.resolve_dependencies()
        self.resolve_version()
        executor = StageExecutor(self.records, self.make_builder)
        try:
            result = executor.run(self.components)
        except BuildError:
            if executor.result:
                self.finalize(executor.result)
                self.report(executor.result)
            raise
        self.finalize(result)
        self.report(result)
        if self.update_profile:
            ProfileUpdater(self.project.bin).update()
        return result

    def finalize(self, result: PipelineResult) -> None:
        result.version = self.version
        result.flags = list(self.flags)
        result.warnings = list(self.composer.warnings)
        for name, record in self.records.items():
            if record.method is Method.UNAVAILABLE and not any(
                name in w for w in result.warnings
            ):
                result.warnings.append(f"{name} unavailable: {record.detail}")

    def report(self, result: PipelineResult) -> None:
        if result.succeeded:
            version = result.version.identifier if result.version else "?"
            self.log.info("=== Compilation Complete! ===")
            self.log.info("FFmpeg %s installed to %s", version, self.project.bin / "ffmpeg")
        else:
            self.log.error("=== Compilation Failed ===")
        for line in result.summary():
            if line.startswith("warning:"):
                self.log.warning(line)
            else:
                self.log.info(line)

    def dry_run(self) -> None:
        """show build plan without building"""
        print("=" * 60)
        print("BUILD PLAN")
        print("=" * 60)
        print(f"  Platform:        {self.system}")
        print(f"  Package manager: {self.package_manager!r}")
        print(f"  Sources:         {self.project.root}")
        print(f"  Prefix:          {self.project.prefix}")
        print(f"  Jobs:            {self.jobs}")
        print(f"  Version query:   {self.query or '(latest stable)'}")
        print("")
        print("Components:")
        for component in self.components:
            kind = "required" if component.required else "optional"
            print(f"  {component.order}. {component.name} ({kind})")
            for pkgs in component.primary_for(self.system):
                print(f"       primary:   {' '.join(pkgs)}")
            if component.builder is not None:
                builder = component.builder(project=self.project)
                source = builder.download_url if builder.is_archive else builder.repo_url
                print(f"       secondary: {source}")
            if component.flags:
                print(f"       flags:     {' '.join(component.flags)}")
        print("")
        print("No changes were made.")


def main(argv: Optional[list[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="buildffmpeg.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Compile FFmpeg with essential audio codecs",
    )
    opt = parser.add_argument

    # fmt: off
    opt("-v", "--version", dest="query", default=None, metavar="QUERY",
        help="ffmpeg version: n7.0.2, a major number like 7, or '' for latest stable")
    opt("-y", "--yes", help="never prompt; use latest stable unless --version is given", action="store_true")
    opt("-j", "--jobs", help="# of build jobs (default: %(default)s)", type=int, default=PLATFORM_INFO.cpu_count)
    opt("-p", "--prefix", default=DEFAULT_PREFIX, help="install prefix (default: %(default)s)")
    opt("-s", "--sources", default=DEFAULT_SOURCES, help="working copy root (default: %(default)s)")
    opt("-n", "--dry-run", help="show build plan without building", action="store_true")
    opt("-l", "--list-versions", help="list latest release per major version", action="store_true")
    opt("--skip-space-check", help="do not check for ~2GB of free space", action="store_true")
    opt("--update-profile", help="add the prefix bin dir to PATH in shell rc files", action="store_true")
    opt("--script-version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args(argv)
    log = logging.getLogger("main")

    if not PLATFORM_INFO.is_supported:
        log.critical("script only works on Linux and MacOS")
        sys.exit(ExitCode.FAILURE)

    project = Project(root=args.sources, prefix=args.prefix)
    interactive = args.query is None and not args.yes and sys.stdin.isatty()

    try:
        if args.list_versions:
            candidates = fetch_candidates(SourceControl(), FFMPEG_REPO_URL)
            for major, candidate in latest_by_major(candidates).items():
                print(f"  {major} -> {candidate.identifier}")
            sys.exit(ExitCode.SUCCESS)

        pipeline = Pipeline(
            project=project,
            query=args.query or "",
            input_fn=input if interactive else None,
            jobs=args.jobs,
            check_space=not args.skip_space_check,
            update_profile=args.update_profile,
        )
        if args.dry_run:
            pipeline.dry_run()
            sys.exit(ExitCode.SUCCESS)
        pipeline.run()
    except BuildError as e:
        log.critical("%s", e)
        if isinstance(e, NotFound) and e.matches:
            log.critical("matching versions: %s", ", ".join(e.matches))
        log.critical("working copies left in %s for inspection", project.root)
        sys.exit(e.exit_code)
    except (KeyboardInterrupt, EOFError):
        log.critical("interrupted")
        sys.exit(ExitCode.INTERRUPTED)
    sys.exit(ExitCode.SUCCESS)


if __name__ == "__main__":
    main()
