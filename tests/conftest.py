import pytest
from pathlib import Path

from buildffmpeg import (
    Builder,
    CommandError,
    Component,
    PackageManager,
    Project,
    SourceControl,
)


class FakePackageManager(PackageManager):
    """installs only the packages it was told about"""

    executable = "fake-pm"

    def __init__(self, installable=()):
        super().__init__()
        self.installable = set(installable)
        self.attempts = []

    def install(self, *pkgs):
        self.attempts.append(pkgs)
        return all(pkg in self.installable for pkg in pkgs)


class FakeSourceControl(SourceControl):
    """git without network: clone creates the working copy on disk"""

    def __init__(self, tags=(), fail_clone=False):
        super().__init__()
        self.tags = set(tags)
        self.fail_clone = fail_clone
        self.calls = []

    def list_tags(self, repo):
        self.calls.append(("list_tags", repo))
        return set(self.tags)

    def clone(self, repo, dest, branch=None, depth=1):
        self.calls.append(("clone", Path(dest).name))
        if self.fail_clone:
            raise CommandError(f"Command failed: git clone {repo}")
        (Path(dest) / ".git").mkdir(parents=True)

    def pull(self, dest):
        self.calls.append(("pull", Path(dest).name))

    def fetch_tag(self, dest, tag):
        self.calls.append(("fetch_tag", Path(dest).name))

    def checkout(self, dest, ref):
        self.calls.append(("checkout", ref))


class RecordingBuilder(Builder):
    """git based builder whose toolchain steps only record themselves"""

    name = "recording"
    repo_url = "https://example.com/recording.git"
    prerequisites = []
    fail_on = None
    steps = []

    def _step(self, step):
        type(self).steps.append((self.name, step))
        if step == self.fail_on:
            raise CommandError(f"Command failed: {step}")

    def configure(self):
        self._step("configure")

    def build(self):
        self._step("build")

    def install(self):
        self._step("install")


def make_builder_class(name, **attrs):
    return type(f"{name.title()}Builder", (RecordingBuilder,), {"name": name, **attrs})


@pytest.fixture(autouse=True)
def reset_steps():
    RecordingBuilder.steps = []
    yield
    RecordingBuilder.steps = []


@pytest.fixture
def project(tmp_path):
    return Project(root=tmp_path / "sources", prefix=tmp_path / "prefix")


@pytest.fixture
def source_control():
    return FakeSourceControl(tags={"n6.1.1", "n6.9.0", "n7.0.2", "n7.1-dev"})


@pytest.fixture
def components():
    """small stack: packaged tools, two source builds, one optional"""
    return (
        Component(name="tools", order=0, packages={"Linux": (("gcc", "make"),)}),
        Component(
            name="alpha",
            order=1,
            builder=make_builder_class("alpha"),
            flags=("--enable-alpha",),
        ),
        Component(
            name="beta",
            order=2,
            builder=make_builder_class("beta"),
            packages={"Linux": (("libbeta-dev",),)},
            required=False,
            flags=("--enable-beta",),
            pkg_config="beta",
        ),
        Component(name="top", order=3, builder=make_builder_class("top")),
    )
