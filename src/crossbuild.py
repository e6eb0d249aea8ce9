#!/usr/bin/env python3
"""crossbuild.py - cross-compiles a native project and its dependencies

features:

- Single script which fetches, patches, configures, builds and installs a
  fixed, hand-ordered set of third-party libraries and the core project for a
  foreign target (mingw-w64 by default)
- Per-target environment is derived once into an immutable TargetProfile and
  handed to every recipe, nothing is written to os.environ
- Recipes declare their outputs: a recipe whose outputs already exist is
  skipped, so a crashed multi-hour pipeline can simply be re-run
- One append-only log per pipeline run plus one per recipe group
- Produced libraries and binaries are collected into a distributable tree
  before the installer is generated

class structure:

TargetProfile
DependencyDescriptor
Step
Recipe
BuildGraph
BuildPolicy
RecipeResult
BuildReport

ShellCmd
    Project
    Fetcher
    RecipeExecutor
    ArtifactCollector
PipelineRunner
BuildLog
Orchestrator

"""

import argparse
import collections
import datetime
import hashlib
import json
import logging
import os
import platform
import re
import shlex
import shutil
import signal
import stat
import subprocess
import sys
import tarfile
import threading
import zipfile
from dataclasses import dataclass, field, replace
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union
from urllib.request import urlretrieve

__version__ = "0.2.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
Variables = Mapping[str, str]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


def envstr(
    key: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """get string env value, falling back to default if unset or empty"""
    environ = os.environ if environ is None else environ
    return environ.get(key) or default


# ----------------------------------------------------------------------------
# constants

PLATFORM = platform.system()
PY_VER_MINOR = sys.version_info.minor
DEFAULT_PROJECT = "app"
DEFAULT_TARGET = "64-bit"
DEFAULT_JOBS = 4

ENV_PREFIX = "CROSSBUILD_"

# exit codes not produced by a failing step
EXIT_ORCHESTRATOR_ERROR = 125
EXIT_CANCELLED = 130

# cancelled child processes get this long to exit before being killed
CANCEL_GRACE_PERIOD = 5.0

TARGETS: dict[str, dict[str, str]] = {
    "32-bit": {
        "machine": "i686",
        "host": "i686-w64-mingw32",
        "runtime": "libgcc_s_dw2-1.dll",
    },
    "64-bit": {
        "machine": "x86_64",
        "host": "x86_64-w64-mingw32",
        "runtime": "libgcc_s_seh-1.dll",
    },
}

TARGET_ALIASES = {
    "i686": "32-bit",
    "x86": "32-bit",
    "win32": "32-bit",
    "x86_64": "64-bit",
    "amd64": "64-bit",
    "win64": "64-bit",
}

STEP_KINDS = ("patch", "configure", "compile", "install")

GROUPS = ("prerequisites", "core", "packages", "installer")

# recipe status values
SKIPPED = "skipped"
SUCCEEDED = "succeeded"
FAILED = "failed"
NOT_RUN = "not-run"

# failure reasons
REASON_CANCELLED = "Cancelled"
REASON_STEP = "StepExecutionError"
REASON_FETCH = "FetchError"
REASON_UNPACK = "UnpackError"
REASON_MISSING_INPUT = "MissingInput"
REASON_TEMPLATE = "ValidationError"

# characters that need a shell to run a command
SHELL_CHARS = ["|", ">", "<", "&", ";", "$", "*", "`", "(", "~"]

# template variables holding filesystem paths, quoted when expanded in commands
PATH_VARIABLES = (
    "prefix",
    "include",
    "lib",
    "bin",
    "dist",
    "sysroot",
    "srcdir",
    "root",
    "downloads",
    "patches",
)

DEFAULT_FAILURE_SIGNATURES = [
    r"^--- step \S+ \w+: exit (?!0$)",
    r"configure: error:",
    r"\*\*\* \[.*\] Error \d+",
    r"No rule to make target",
    r"undefined reference to",
    r"fatal error:",
]

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=True)

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
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""

    pass


class ValidationError(BuildError):
    """Exception for invalid descriptors, recipes and templates"""

    pass


class ConfigError(ValidationError):
    """Exception for malformed configuration files"""

    pass


class UnsupportedTargetError(BuildError):
    """Exception for an unknown target architecture selector"""

    pass


class FilesystemError(BuildError):
    """Exception for an install tree that cannot be created or written"""

    pass


class FetchError(BuildError):
    """Exception for download errors"""

    pass


class UnpackError(BuildError):
    """Exception for extraction errors"""

    pass


class GraphValidationError(BuildError):
    """Exception for build graphs that fail static validation"""

    pass


class MissingArtifactError(BuildError):
    """Exception for mandatory artifacts that were never produced"""

    pass


class StepExecutionError(BuildError):
    """Exception for an external process that exited non-zero

    Carries the exit code and the tail of the captured output. recipe_id and
    step are filled in by the executor.
    """

    def __init__(
        self,
        command: str,
        exit_code: int,
        output: str = "",
        recipe_id: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        super().__init__(f"Command failed with exit code {exit_code}: {command}")
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.recipe_id = recipe_id
        self.step = step


class StepCancelled(StepExecutionError):
    """Exception for a step terminated by an operator cancellation"""

    pass


# ----------------------------------------------------------------------------
# template helpers


def expand(template: str, variables: Variables) -> str:
    """expand a '{name}' style template, '{{' and '}}' escape literal braces"""
    try:
        return template.format_map(variables)
    except KeyError as e:
        raise ValidationError(
            f"unknown variable {e.args[0]!r} in template: {template}"
        ) from e
    except (IndexError, ValueError) as e:
        raise ValidationError(f"malformed template {template!r}: {e}") from e


def needs_shell(command: str) -> bool:
    """true if command uses shell features like pipes or variables"""
    return any(char in command for char in SHELL_CHARS)


# ----------------------------------------------------------------------------
# target profile


@dataclass(frozen=True)
class TargetProfile:
    """Resolved cross-compilation target, immutable once created."""

    arch: str
    machine: str
    host: str
    prefix: Path
    include_dir: Path
    lib_dir: Path
    bin_dir: Path
    search_roots: tuple[Path, ...] = ()
    project: str = DEFAULT_PROJECT

    @property
    def dist_dir(self) -> Path:
        """root of the final distributable tree"""
        return self.prefix / self.project

    @property
    def sysroot(self) -> Path:
        """primary toolchain search root"""
        if self.search_roots:
            return self.search_roots[0]
        return Path("/usr") / self.host

    @property
    def directories(self) -> tuple[Path, ...]:
        """directories that must exist before any recipe runs"""
        return (self.prefix, self.include_dir, self.lib_dir, self.bin_dir)

    def tool(self, name: str) -> str:
        """toolchain-prefixed tool name: x86_64-w64-mingw32-gcc"""
        return f"{self.host}-{name}"

    def variables(self) -> dict[str, str]:
        """template variables available to every recipe"""
        return {
            "arch": self.arch,
            "machine": self.machine,
            "host": self.host,
            "prefix": str(self.prefix),
            "include": str(self.include_dir),
            "lib": str(self.lib_dir),
            "bin": str(self.bin_dir),
            "dist": str(self.dist_dir),
            "project": self.project,
            "sysroot": str(self.sysroot),
        }

    def environ(self, base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        """return a new process environment for this target"""
        env = dict(os.environ if base is None else base)
        pkgconfig = str(self.lib_dir / "pkgconfig")
        path = env.get("PATH", os.defpath)
        env.update(
            {
                "HOST": self.host,
                "PREFIX": str(self.prefix),
                "CC": self.tool("gcc"),
                "CXX": self.tool("g++"),
                "AR": self.tool("ar"),
                "RANLIB": self.tool("ranlib"),
                "STRIP": self.tool("strip"),
                "WINDRES": self.tool("windres"),
                "NM": self.tool("nm"),
                "DLLTOOL": self.tool("dlltool"),
                "LD": self.tool("ld"),
                "CPPFLAGS": f"-I{self.include_dir}",
                "LDFLAGS": f"-L{self.lib_dir}",
                "PKG_CONFIG_LIBDIR": pkgconfig,
                "PKG_CONFIG_PATH": pkgconfig,
                "PATH": f"{self.bin_dir}{os.pathsep}{path}",
            }
        )
        return env


def canonical_target(target: str) -> str:
    """map a target selector or alias to its architecture id"""
    arch = TARGET_ALIASES.get(target, target)
    if arch not in TARGETS:
        supported = ", ".join(sorted(TARGETS))
        raise UnsupportedTargetError(
            f"unsupported target '{target}' (supported: {supported})"
        )
    return arch


def resolve_target(
    target: str,
    prefix: Optional[Pathlike] = None,
    host: Optional[str] = None,
    sysroot: Optional[Pathlike] = None,
    project: str = DEFAULT_PROJECT,
) -> TargetProfile:
    """resolve a target selector into a fully populated TargetProfile

    Raises:
        UnsupportedTargetError: if target is not a supported architecture
    """
    arch = canonical_target(target)
    info = TARGETS[arch]
    host = host or info["host"]
    if prefix is None:
        root = Path.cwd() / "build" / "install" / info["machine"]
    else:
        root = Path(prefix)
    if sysroot:
        search_roots: tuple[Path, ...] = (Path(sysroot),)
    else:
        search_roots = (
            Path("/usr") / host / "sys-root" / "mingw",
            Path("/usr") / host,
        )
    return TargetProfile(
        arch=arch,
        machine=info["machine"],
        host=host,
        prefix=root,
        include_dir=root / "include",
        lib_dir=root / "lib",
        bin_dir=root / "bin",
        search_roots=search_roots,
        project=project,
    )


def ensure_install_tree(profile: TargetProfile) -> None:
    """create the install root and its include/lib/bin directories

    Raises:
        FilesystemError: if the tree cannot be created or is not writable
    """
    for path in profile.directories:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"cannot create {path}: {e}") from e
        if not os.access(path, os.W_OK):
            raise FilesystemError(f"install directory is not writable: {path}")


# ----------------------------------------------------------------------------
# recipes


@dataclass(frozen=True)
class DependencyDescriptor:
    """Static description of a third-party source archive."""

    name: str
    version: str
    url_template: str
    kind: str = "tar.gz"
    checksum: Optional[str] = None
    checksum_algo: str = "sha256"
    archive_template: str = "{name}-{ver}.{kind}"

    def _vars(self) -> dict[str, str]:
        return {"name": self.name, "ver": self.version, "kind": self.kind}

    @property
    def archive(self) -> str:
        """return filename of archive to be downloaded"""
        return expand(self.archive_template, self._vars())

    @property
    def url(self) -> str:
        """return download url with version interpolated"""
        return expand(self.url_template, {**self._vars(), "archive": self.archive})

    @property
    def dirname(self) -> str:
        """deterministic name of the unpacked source tree"""
        return f"{self.name}-{self.version}"

    def validate(self) -> None:
        """check that the descriptor can be fetched"""
        if not self.name or not self.version:
            raise ValidationError(
                f"dependency descriptor needs a name and a version: {self!r}"
            )

    def pinned(self, version: Optional[str]) -> "DependencyDescriptor":
        """return a copy with version replaced if a pin is given"""
        if not version or version == self.version:
            return self
        # a checksum only applies to the version it was taken from
        return replace(self, version=version, checksum=None)


@dataclass(frozen=True)
class Step:
    """One shell-level action of a recipe."""

    kind: str
    command: str
    cwd: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in STEP_KINDS:
            raise ValidationError(
                f"unknown step kind '{self.kind}' (expected one of {', '.join(STEP_KINDS)})"
            )

    def render(self, variables: Variables) -> tuple[str, str]:
        """expand command and working directory

        Path variables are shell-quoted in the command so that paths with
        spaces stay single arguments; the working directory is not quoted.
        """
        quoted = {
            k: shlex.quote(v) if k in PATH_VARIABLES else v
            for k, v in variables.items()
        }
        command = expand(self.command, quoted)
        if self.cwd:
            cwd = expand(self.cwd, variables)
        elif "srcdir" in variables:
            cwd = variables["srcdir"]
        else:
            raise ValidationError(f"no working directory for step: {self.command}")
        return command, cwd

    def check(self, variables: Variables) -> None:
        """raise ValidationError if a template names an unknown variable"""
        expand(self.command, variables)
        if self.cwd:
            expand(self.cwd, variables)


@dataclass(frozen=True)
class Recipe:
    """Ordered build steps for one dependency or project component.

    Declared outputs are the idempotency key: if they all exist, the recipe
    is skipped. Declared inputs must exist before the first step runs.
    """

    id: str
    steps: tuple[Step, ...]
    group: str = "prerequisites"
    source: Optional[DependencyDescriptor] = None
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    variables: tuple[tuple[str, str], ...] = ()
    optional: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("recipe id must not be empty")
        if self.group not in GROUPS:
            raise ValidationError(
                f"recipe '{self.id}' has unknown group '{self.group}'"
            )

    def __repr__(self) -> str:
        return f"<Recipe '{self.id}' ({self.group}, {len(self.steps)} steps)>"

    def expand_paths(self, templates: Iterable[str], variables: Variables) -> list[Path]:
        return [Path(expand(t, variables)) for t in templates]

    def declared_outputs(self, variables: Variables) -> list[Path]:
        return self.expand_paths(self.outputs, variables)

    def declared_inputs(self, variables: Variables) -> list[Path]:
        return self.expand_paths(self.inputs, variables)


def make_recipe(
    id: str,
    steps: Iterable[Union[Step, tuple[str, str]]],
    group: str = "prerequisites",
    source: Optional[DependencyDescriptor] = None,
    inputs: Iterable[str] = (),
    outputs: Iterable[str] = (),
    requires: Iterable[str] = (),
    variables: Optional[Mapping[str, str]] = None,
    optional: bool = False,
) -> Recipe:
    """convenience constructor accepting plain lists and (kind, command) pairs"""
    _steps = tuple(s if isinstance(s, Step) else Step(*s) for s in steps)
    return Recipe(
        id=id,
        steps=_steps,
        group=group,
        source=source,
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        requires=tuple(requires),
        variables=tuple(sorted((variables or {}).items())),
        optional=optional,
    )


# ----------------------------------------------------------------------------
# build graph


class BuildGraph:
    """Declared execution order of all recipes in a pipeline run."""

    def __init__(
        self, recipes: Iterable[Recipe] = (), external: Iterable[str] = ()
    ) -> None:
        self._recipes: list[Recipe] = []
        self._index: dict[str, int] = {}
        # ids of recipes declared outside this graph, set on subgraphs
        self.external = frozenset(external)
        for recipe in recipes:
            self.add(recipe)

    def __repr__(self) -> str:
        return f"<BuildGraph {self.ids}>"

    def __iter__(self) -> Iterator[Recipe]:
        return iter(self._recipes)

    def __len__(self) -> int:
        return len(self._recipes)

    def __contains__(self, recipe_id: object) -> bool:
        return recipe_id in self._index

    def __getitem__(self, recipe_id: str) -> Recipe:
        try:
            return self._recipes[self._index[recipe_id]]
        except KeyError:
            raise GraphValidationError(f"unknown recipe '{recipe_id}'") from None

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self._recipes]

    def add(self, recipe: Recipe) -> None:
        """append recipe to the end of the declared order"""
        if recipe.id in self._index:
            raise GraphValidationError(f"duplicate recipe id '{recipe.id}'")
        self._index[recipe.id] = len(self._recipes)
        self._recipes.append(recipe)

    def index(self, recipe_id: str) -> int:
        self[recipe_id]
        return self._index[recipe_id]

    def closure(self, recipe_id: str) -> "BuildGraph":
        """recipe and its transitive requirements, in declared order"""
        wanted = set()
        pending = [recipe_id]
        while pending:
            current = self[pending.pop()]
            if current.id in wanted:
                continue
            wanted.add(current.id)
            pending.extend(current.requires)
        return self.subgraph(r for r in self._recipes if r.id in wanted)

    def subgraph(self, recipes: Iterable[Recipe]) -> "BuildGraph":
        """graph of recipes which may require any recipe of this graph"""
        return BuildGraph(recipes, external=self.external.union(self._index))

    def only(self, recipe_id: str) -> "BuildGraph":
        """subgraph holding a single recipe"""
        return self.subgraph([self[recipe_id]])

    def select(self, *groups: str) -> "BuildGraph":
        """subgraph of the recipes in the given groups"""
        return self.subgraph(r for r in self._recipes if r.group in groups)

    def exclude(self, *groups: str) -> "BuildGraph":
        """subgraph without the recipes in the given groups"""
        return self.subgraph(r for r in self._recipes if r.group not in groups)

    def descriptors(self) -> list[DependencyDescriptor]:
        """unique source descriptors in declared order"""
        seen: dict[tuple[str, str], DependencyDescriptor] = {}
        for recipe in self._recipes:
            if recipe.source is not None:
                key = (recipe.source.name, recipe.source.version)
                seen.setdefault(key, recipe.source)
        return list(seen.values())

    def validate(
        self, variables: Union[Variables, Callable[[Recipe], Variables]]
    ) -> None:
        """statically check ordering, edges, inputs and step templates

        Every recipe group must follow the canonical group order, every
        required recipe must come earlier (or, for a subgraph, be declared
        in its parent graph), every declared input must be a declared output
        of an earlier recipe or already exist on disk, and every step
        template must expand. variables is either a mapping or a function
        returning the template variables of a recipe.

        Raises:
            GraphValidationError: listing every problem found
        """
        problems: list[str] = []
        produced: set[Path] = set()
        seen: set[str] = set()
        last_group = 0
        for recipe in self._recipes:
            group = GROUPS.index(recipe.group)
            if group < last_group:
                problems.append(
                    f"{recipe.id}: group '{recipe.group}' after '{GROUPS[last_group]}'"
                )
            last_group = max(last_group, group)
            for required in recipe.requires:
                if required in seen:
                    continue
                if required in self._index:
                    problems.append(
                        f"{recipe.id}: requires '{required}' which is declared later"
                    )
                elif required not in self.external:
                    problems.append(
                        f"{recipe.id}: requires unknown recipe '{required}'"
                    )
            try:
                if callable(variables):
                    _vars = variables(recipe)
                else:
                    _vars = {**variables, **dict(recipe.variables)}
                for path in recipe.declared_inputs(_vars):
                    if path not in produced and not path.exists():
                        problems.append(
                            f"{recipe.id}: input {path} is not produced by an earlier recipe"
                        )
                produced.update(recipe.declared_outputs(_vars))
                for step in recipe.steps:
                    step.check(_vars)
            except ValidationError as e:
                problems.append(f"{recipe.id}: {e}")
            seen.add(recipe.id)
        if problems:
            raise GraphValidationError(
                "invalid build graph:\n  " + "\n  ".join(problems)
            )


# ----------------------------------------------------------------------------
# results


@dataclass
class BuildPolicy:
    """How the pipeline reacts to failures."""

    halt_on_failure: bool = True
    fetch_errors_fatal: bool = True


@dataclass
class RecipeResult:
    """Outcome of one recipe in a pipeline run."""

    recipe_id: str
    status: str = NOT_RUN
    step: Optional[str] = None
    step_index: Optional[int] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    log_offset: Optional[int] = None
    steps_run: int = 0
    fatal: bool = True
    error: Optional[BuildError] = None

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe": self.recipe_id,
            "status": self.status,
            "step": self.step,
            "step_index": self.step_index,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "log_offset": self.log_offset,
            "steps_run": self.steps_run,
            "fatal": self.fatal,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class BuildReport:
    """Aggregated per-recipe results of one pipeline run."""

    log_path: Optional[Path] = None
    results: dict[str, RecipeResult] = field(default_factory=dict)
    cancelled: bool = False

    def plan(self, graph: BuildGraph) -> None:
        """register every recipe of graph as not-run"""
        for recipe in graph:
            self.results.setdefault(recipe.id, RecipeResult(recipe.id))

    def record(self, result: RecipeResult) -> None:
        self.results[result.recipe_id] = result

    def status(self, recipe_id: str) -> str:
        return self.results[recipe_id].status

    @property
    def failures(self) -> list[RecipeResult]:
        return [r for r in self.results.values() if r.failed]

    @property
    def first_failure(self) -> Optional[RecipeResult]:
        """first fatal failure in declared order"""
        for result in self.failures:
            if result.fatal:
                return result
        return None

    @property
    def succeeded(self) -> bool:
        """true if no fatal failure and nothing was left unrun"""
        return self.first_failure is None and all(
            r.status != NOT_RUN for r in self.results.values()
        )

    @property
    def exit_code(self) -> int:
        """process exit code for this report"""
        failure = self.first_failure
        if self.cancelled:
            return EXIT_CANCELLED
        if failure is None:
            if self.succeeded:
                return 0
            return EXIT_ORCHESTRATOR_ERROR
        if failure.reason == REASON_CANCELLED:
            return EXIT_CANCELLED
        if failure.exit_code:
            return failure.exit_code
        return EXIT_ORCHESTRATOR_ERROR

    def summary(self) -> str:
        """human readable listing of every recipe status"""
        width = max([len(r) for r in self.results] + [6])
        lines = [f"{'recipe':<{width}}  status"]
        for result in self.results.values():
            line = f"{result.recipe_id:<{width}}  {result.status}"
            if result.failed:
                detail = [result.reason or ""]
                if result.step:
                    detail.append(f"step={result.step}")
                if result.exit_code is not None:
                    detail.append(f"exit={result.exit_code}")
                if result.log_offset is not None:
                    detail.append(f"log@{result.log_offset}")
                if not result.fatal:
                    detail.append("non-fatal")
                line += " (" + ", ".join(d for d in detail if d) + ")"
            lines.append(line)
        if self.log_path:
            lines.append(f"log: {self.log_path}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        first = self.first_failure
        return {
            "log": str(self.log_path) if self.log_path else None,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "first_failure": first.to_dict() if first else None,
            "results": [r.to_dict() for r in self.results.values()],
        }

    def write_json(self, to: Pathlike) -> None:
        with open(to, "w", encoding="utf8") as f:
            json.dump(self.to_dict(), f, indent=4)


# ----------------------------------------------------------------------------
# pipeline log


class BuildLog:
    """Append-only pipeline log with one companion file per recipe group.

    Content is deterministic: section markers and raw step output only, so
    log scanners can rely on its format.
    """

    def __init__(self, path: Pathlike, group_dir: Optional[Pathlike] = None) -> None:
        self.path = Path(path)
        self.group_dir = Path(group_dir) if group_dir else self.path.parent
        self._lock = threading.Lock()
        self._main: Optional[Any] = None
        self._groups: dict[str, Any] = {}
        self.group: Optional[str] = None

    def __enter__(self) -> "BuildLog":
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._main = open(self.path, "ab")

    def close(self) -> None:
        with self._lock:
            for f in [self._main, *self._groups.values()]:
                if f is not None:
                    f.close()
            self._main = None
            self._groups.clear()

    def group_path(self, group: str) -> Path:
        return self.group_dir / f"{group}.log"

    @property
    def offset(self) -> int:
        """current byte offset of the run log"""
        with self._lock:
            if self._main is None:
                return self.path.stat().st_size if self.path.exists() else 0
            self._main.flush()
            return self._main.tell()

    def write(self, data: Union[str, bytes]) -> None:
        """append data to the run log and the current group log"""
        if isinstance(data, str):
            data = data.encode("utf8", errors="replace")
        with self._lock:
            if self._main is None:
                raise BuildError(f"log is not open: {self.path}")
            self._main.write(data)
            if self.group:
                if self.group not in self._groups:
                    self.group_dir.mkdir(parents=True, exist_ok=True)
                    self._groups[self.group] = open(self.group_path(self.group), "ab")
                self._groups[self.group].write(data)

    def line(self, text: str) -> None:
        self.write(text + "\n")

    def flush(self) -> None:
        with self._lock:
            for f in [self._main, *self._groups.values()]:
                if f is not None:
                    f.flush()


@dataclass
class LogMatch:
    """A failure signature found in a pipeline log."""

    line_no: int
    recipe_id: Optional[str]
    signature: str
    text: str


RECIPE_MARKER = re.compile(r"^=== recipe (\S+) \[")


def scan_log(
    path: Pathlike, signatures: Optional[Iterable[str]] = None
) -> list[LogMatch]:
    """find known failure signatures in a pipeline log"""
    patterns = [re.compile(s) for s in (signatures or DEFAULT_FAILURE_SIGNATURES)]
    matches: list[LogMatch] = []
    recipe_id: Optional[str] = None
    with open(path, encoding="utf8", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip("\n")
            marker = RECIPE_MARKER.match(line)
            if marker:
                recipe_id = marker.group(1)
                continue
            for pattern in patterns:
                if pattern.search(line):
                    matches.append(LogMatch(line_no, recipe_id, pattern.pattern, line))
                    break
    return matches


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: Union[str, list[str]],
        cwd: Pathlike = ".",
        env: Optional[Mapping[str, str]] = None,
        output: Optional[Callable[[bytes], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Run shell command within working directory

        Combined stdout/stderr is streamed line by line to output. Blocks
        until the process exits; if cancel is set the process group is
        terminated, then killed after CANCEL_GRACE_PERIOD.

        Raises:
            StepExecutionError: if the command exits non-zero or cannot start
            StepCancelled: if cancel was set while the command ran
        """
        command = shellcmd if isinstance(shellcmd, str) else shlex.join(shellcmd)
        self.log.info(command)
        if isinstance(shellcmd, str):
            use_shell = needs_shell(shellcmd)
            args: Union[str, list[str]] = shellcmd if use_shell else shlex.split(shellcmd)
        else:
            use_shell = False
            args = shellcmd
        tail: collections.deque[str] = collections.deque(maxlen=50)

        try:
            proc = subprocess.Popen(
                args,
                shell=use_shell,
                cwd=str(cwd),
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=PLATFORM != "Windows",
            )
        except OSError as e:
            self.log.critical("Command could not start: %s", e)
            raise StepExecutionError(command, 127, str(e)) from e

        def pump() -> None:
            assert proc.stdout is not None
            for chunk in iter(proc.stdout.readline, b""):
                tail.append(chunk.decode("utf8", errors="replace"))
                if output is not None:
                    output(chunk)

        reader = threading.Thread(target=pump, daemon=True)
        reader.start()
        cancelled = False
        while True:
            try:
                proc.wait(timeout=0.1)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    self._terminate(proc)
                    break
        reader.join()
        proc.stdout.close()

        returncode = proc.returncode
        if returncode is not None and returncode < 0:
            returncode = 128 - returncode
        if cancelled:
            self.log.error("Command cancelled: %s", command)
            raise StepCancelled(command, returncode or EXIT_CANCELLED, "".join(tail))
        if returncode != 0:
            self.log.critical("Command failed (exit %s): %s", returncode, command)
            raise StepExecutionError(command, returncode, "".join(tail))

    def _terminate(self, proc: subprocess.Popen) -> None:
        """terminate process group, kill it if it outlives the grace period"""
        self.log.warning("terminating pid %s", proc.pid)
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=CANCEL_GRACE_PERIOD)
        except subprocess.TimeoutExpired:
            self.log.warning("killing pid %s", proc.pid)
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()

    def _signal(self, proc: subprocess.Popen, signum: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signum)
            else:
                proc.send_signal(signum)
        except ProcessLookupError:
            pass

    def download(
        self,
        url: str,
        tofolder: Optional[Pathlike] = None,
        checksum: Optional[str] = None,
        checksum_algo: str = "sha256",
        filename: Optional[str] = None,
    ) -> Path:
        """Download a file from a url to an optional folder with checksum validation

        Args:
            url: URL to download from
            tofolder: Optional destination folder
            checksum: Optional checksum to validate download
            checksum_algo: Hash algorithm (sha256, sha512, md5)
            filename: Optional local filename, defaults to the url basename

        Returns:
            Path to downloaded file

        Raises:
            FetchError: If download or validation fails
        """
        _path = Path(filename or os.path.basename(url))
        if tofolder:
            _path = Path(tofolder).joinpath(_path)
        if _path.exists():
            if not checksum:
                self.log.debug("Using cached file: %s", _path)
                return _path
            self.log.info("Validating cached file...")
            if self._validate_checksum(_path, checksum, checksum_algo):
                self.log.debug("Using cached file: %s", _path)
                return _path
            self.log.warning("Existing file checksum mismatch, re-downloading")
            _path.unlink()

        try:
            self.log.info("Downloading %s...", url)
            urlretrieve(url, filename=_path)
            self.log.info("Download complete: %s", _path.name)
        except Exception as e:
            if _path.exists():
                _path.unlink()
            raise FetchError(f"Failed to download {url}: {e}") from e

        if checksum:
            self.log.info("Verifying checksum...")
            if not self._validate_checksum(_path, checksum, checksum_algo):
                _path.unlink()
                raise FetchError(f"Checksum validation failed for {url}")
            self.log.info("Checksum verified")
        return _path

    def _validate_checksum(
        self, filepath: Path, expected: str, algo: str = "sha256"
    ) -> bool:
        """Validate file checksum"""
        hash_func = hashlib.new(algo)
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                hash_func.update(chunk)
        actual = hash_func.hexdigest()
        return bool(actual.lower() == expected.lower())

    def extract(self, archive: Pathlike, tofolder: Pathlike = ".") -> None:
        """Extract archive with security measures

        Raises:
            UnpackError: If extraction fails or file type unsupported
        """
        if not Path(archive).is_file():
            raise UnpackError(f"Archive not found: {archive}")
        if tarfile.is_tarfile(archive):
            try:
                with tarfile.open(archive) as f:
                    self.log.info("Extracting %s", os.path.basename(str(archive)))
                    if sys.version_info.minor >= 12:
                        f.extractall(tofolder, filter="data")
                    else:
                        self._safe_extract_tar(f, tofolder)
            except Exception as e:
                raise UnpackError(f"Failed to extract {archive}: {e}") from e
        elif zipfile.is_zipfile(archive):
            try:
                self.log.info("Extracting %s", os.path.basename(str(archive)))
                with zipfile.ZipFile(archive) as f:
                    f.extractall(tofolder)
            except Exception as e:
                raise UnpackError(f"Failed to extract {archive}: {e}") from e
        else:
            raise UnpackError(f"Unsupported archive type: {archive}")

    def _safe_extract_tar(self, tar: tarfile.TarFile, path: Pathlike) -> None:
        """Safely extract tarfile for Python < 3.12 (CVE-2007-4559 mitigation)"""
        dest_path = Path(path).resolve()
        members = []
        for member in tar.getmembers():
            member_path = (dest_path / member.name).resolve()
            if not str(member_path).startswith(str(dest_path)):
                raise UnpackError(f"Path traversal detected: {member.name}")
            if member.issym():
                link_target = (member_path.parent / member.linkname).resolve()
                if not str(link_target).startswith(str(dest_path)):
                    self.log.warning(
                        "Skipping suspicious symlink: %s -> %s",
                        member.name,
                        member.linkname,
                    )
                    continue
            members.append(member)
        tar.extractall(path, members=members)

    def fail(self, msg: str, *args: str, error: type[BuildError] = BuildError) -> None:
        """Raise error (BuildError by default) with formatted message"""
        formatted_msg = msg % args if args else msg
        self.log.critical(formatted_msg)
        raise error(formatted_msg)

    def copy(self, src: Pathlike, dst: Pathlike) -> None:
        """copy file or folders -- tries to be behave like `cp -rf`"""
        self.log.info("copy %s to %s", src, dst)
        src, dst = Path(src), Path(dst)
        if src.is_dir():
            shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dst)

    def remove(self, path: Pathlike, silent: bool = False) -> None:
        """Remove file or folder."""

        # handle windows error on read-only files
        def remove_readonly(func: Callable[..., Any], path: str, exc_info: Any) -> None:
            "Clear the readonly bit and reattempt the removal"
            if PY_VER_MINOR < 12:
                exc = exc_info[1]
            else:
                exc = exc_info
            if func not in (os.unlink, os.rmdir) or getattr(exc, "winerror", None) != 5:
                raise exc
            os.chmod(path, stat.S_IWRITE)
            func(path)

        path = Path(path)
        if path.is_dir() and not path.is_symlink():
            if not silent:
                self.log.debug("Removing folder: %s", path)
            if PY_VER_MINOR < 12:
                shutil.rmtree(path, onerror=remove_readonly)
            else:
                shutil.rmtree(path, onexc=remove_readonly)
        else:
            if not silent:
                self.log.debug("Removing file: %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                if not silent:
                    self.log.debug("File not found: %s", path)


# ----------------------------------------------------------------------------
# main classes


class Project(ShellCmd):
    """Utility class to hold project directory structure"""

    def __init__(self, root: Optional[Pathlike] = None) -> None:
        self.root = Path(root) if root else Path.cwd()
        self.build = self.root / "build"
        self.downloads = self.build / "downloads"
        self.src = self.build / "src"
        self.install = self.build / "install"
        self.logs = self.build / "logs"
        self.patches = self.root / "patches"
        self.log = logging.getLogger(self.__class__.__name__)

    def setup(self) -> None:
        """create main project directories"""
        for path in [self.build, self.downloads, self.src, self.logs]:
            path.mkdir(parents=True, exist_ok=True)

    def reset(self, profile: Optional[TargetProfile] = None) -> None:
        """prepare project for a rebuild, keeping downloaded archives"""
        if profile is None:
            self.remove(self.src)
            self.remove(self.install)
        else:
            self.remove(self.src / profile.machine)
            self.remove(profile.prefix)


class Fetcher(ShellCmd):
    """Ensures an unpacked source tree exists for a dependency."""

    def __init__(self, downloads: Pathlike, src: Pathlike) -> None:
        self.downloads = Path(downloads)
        self.src = Path(src)
        self.log = logging.getLogger(self.__class__.__name__)

    def archive_path(self, descriptor: DependencyDescriptor) -> Path:
        return self.downloads / descriptor.archive

    def source_dir(self, descriptor: DependencyDescriptor) -> Path:
        return self.src / descriptor.dirname

    def ensure(self, descriptor: DependencyDescriptor) -> Path:
        """return the unpacked source tree, fetching and unpacking if needed

        Raises:
            ValidationError: if the descriptor has no name or version
            FetchError: if the archive cannot be retrieved
            UnpackError: if the archive cannot be unpacked
        """
        descriptor.validate()
        src_dir = self.source_dir(descriptor)
        if src_dir.is_dir():
            self.log.debug("source tree present: %s", src_dir)
            return src_dir

        self.downloads.mkdir(parents=True, exist_ok=True)
        self.src.mkdir(parents=True, exist_ok=True)
        archive = self.download(
            descriptor.url,
            tofolder=self.downloads,
            checksum=descriptor.checksum,
            checksum_algo=descriptor.checksum_algo,
            filename=descriptor.archive,
        )
        self.unpack(archive, src_dir)
        return src_dir

    def unpack(self, archive: Path, src_dir: Path) -> None:
        """unpack archive into src_dir via a staging directory"""
        staging = src_dir.with_name(f".{src_dir.name}.unpack")
        if staging.exists():
            self.remove(staging)
        staging.mkdir(parents=True)
        try:
            self.extract(archive, tofolder=staging)
            entries = list(staging.iterdir())
            if not entries:
                raise UnpackError(f"archive is empty: {archive}")
            if len(entries) == 1 and entries[0].is_dir():
                # archive has a single top-level folder: use it as the tree
                os.replace(entries[0], src_dir)
            else:
                os.replace(staging, src_dir)
        finally:
            if staging.exists():
                self.remove(staging, silent=True)
        self.log.info("unpacked %s -> %s", archive.name, src_dir)


class RecipeExecutor(ShellCmd):
    """Runs the steps of a single recipe against a target profile."""

    def __init__(
        self,
        fetcher: Fetcher,
        buildlog: Optional[BuildLog] = None,
        variables: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.fetcher = fetcher
        self.buildlog = buildlog
        self.variables = dict(variables or {})
        self.cancel = cancel or threading.Event()
        self.log = logging.getLogger(self.__class__.__name__)

    def recipe_variables(
        self, recipe: Recipe, profile: TargetProfile
    ) -> dict[str, str]:
        """profile variables, runner variables, then recipe-local ones"""
        _vars = profile.variables()
        _vars.update(self.variables)
        if recipe.source is not None:
            _vars["srcdir"] = str(self.fetcher.source_dir(recipe.source))
            _vars["name"] = recipe.source.name
            _vars["ver"] = recipe.source.version
        else:
            _vars.setdefault("srcdir", _vars.get("root", str(Path.cwd())))
        local = {k: expand(v, _vars) for k, v in recipe.variables}
        _vars.update(local)
        return _vars

    def outputs_present(self, recipe: Recipe, variables: Variables) -> bool:
        """true if the recipe declares outputs and all of them exist"""
        outputs = recipe.declared_outputs(variables)
        return bool(outputs) and all(p.exists() for p in outputs)

    def _write(self, text: str) -> None:
        if self.buildlog is not None:
            self.buildlog.line(text)

    def _output(self, chunk: bytes) -> None:
        if self.buildlog is not None:
            self.buildlog.write(chunk)

    def run(self, recipe: Recipe, profile: TargetProfile) -> RecipeResult:
        """execute recipe, returning its result

        Steps run strictly in order; the first failing step aborts the
        recipe and nothing is rolled back.
        """
        result = RecipeResult(recipe.id, fatal=not recipe.optional)
        if self.buildlog is not None:
            self.buildlog.group = recipe.group
            result.log_offset = self.buildlog.offset
        self._write(f"=== recipe {recipe.id} [{recipe.group}] ===")

        try:
            variables = self.recipe_variables(recipe, profile)
            present = self.outputs_present(recipe, variables)
        except ValidationError as e:
            self.log.error("%s: %s", recipe.id, e)
            return self._failed(result, REASON_TEMPLATE, e)
        if present:
            self.log.info("%s: outputs present, skipping", recipe.id)
            result.status = SKIPPED
            self._write(f"=== recipe {recipe.id}: {SKIPPED} (outputs present) ===")
            return result

        if recipe.source is not None:
            try:
                self.fetcher.ensure(recipe.source)
            except (FetchError, UnpackError, ValidationError) as e:
                self.log.error("%s: %s", recipe.id, e)
                reason = REASON_UNPACK if isinstance(e, UnpackError) else REASON_FETCH
                return self._failed(result, reason, e)

        try:
            missing = [p for p in recipe.declared_inputs(variables) if not p.exists()]
        except ValidationError as e:
            self.log.error("%s: %s", recipe.id, e)
            return self._failed(result, REASON_TEMPLATE, e)
        if missing:
            error = BuildError(
                f"{recipe.id}: missing inputs: {', '.join(str(p) for p in missing)}"
            )
            self.log.error(str(error))
            return self._failed(result, REASON_MISSING_INPUT, error)

        env = profile.environ()
        total = len(recipe.steps)
        for index, step in enumerate(recipe.steps, start=1):
            if self.cancel.is_set():
                self.log.warning("%s: cancelled before %s", recipe.id, step.kind)
                result.step, result.step_index = step.kind, index
                result.exit_code = EXIT_CANCELLED
                error = StepCancelled(
                    step.command, EXIT_CANCELLED, "", recipe.id, step.kind
                )
                return self._failed(result, REASON_CANCELLED, error)
            try:
                command, cwd = step.render(variables)
            except ValidationError as e:
                self.log.error("%s: %s", recipe.id, e)
                result.step, result.step_index = step.kind, index
                return self._failed(result, REASON_TEMPLATE, e)
            marker = f"--- step {index}/{total} {step.kind}"
            self._write(f"{marker}: {command}")
            self.log.info("%s: %s (%d/%d)", recipe.id, step.kind, index, total)
            result.steps_run = index
            try:
                if not Path(cwd).is_dir():
                    raise StepExecutionError(
                        command, EXIT_ORCHESTRATOR_ERROR, f"no such directory: {cwd}"
                    )
                self.cmd(
                    command,
                    cwd=cwd,
                    env=env,
                    output=self._output,
                    cancel=self.cancel,
                )
            except StepExecutionError as e:
                e.recipe_id, e.step = recipe.id, step.kind
                self._write(f"{marker}: exit {e.exit_code}")
                result.step, result.step_index = step.kind, index
                result.exit_code = e.exit_code
                if isinstance(e, StepCancelled):
                    return self._failed(result, REASON_CANCELLED, e)
                return self._failed(result, REASON_STEP, e)
            self._write(f"{marker}: exit 0")

        result.status = SUCCEEDED
        self._write(f"=== recipe {recipe.id}: {SUCCEEDED} ===")
        return result

    def _failed(
        self, result: RecipeResult, reason: str, error: BuildError
    ) -> RecipeResult:
        result.status = FAILED
        result.reason = reason
        result.error = error
        self._write(f"=== recipe {result.recipe_id}: {FAILED} ({reason}) ===")
        return result


class PipelineRunner:
    """Executes a build graph in declared order and aggregates a report."""

    def __init__(
        self,
        fetcher: Fetcher,
        log_dir: Pathlike,
        variables: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.fetcher = fetcher
        self.variables = dict(variables or {})
        self.cancel = cancel or threading.Event()
        self.run_id = run_id or datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
        self.log_dir = Path(log_dir) / self.run_id
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def log_path(self) -> Path:
        return self.log_dir / "pipeline.log"

    def execute(
        self,
        graph: BuildGraph,
        profile: TargetProfile,
        policy: Optional[BuildPolicy] = None,
        report: Optional[BuildReport] = None,
    ) -> BuildReport:
        """run every recipe of graph and return the report

        Passing an earlier report continues it, appending to the same log.

        Raises:
            GraphValidationError: if the graph fails static validation
            FilesystemError: if the install tree cannot be created
        """
        policy = policy or BuildPolicy()
        report = report or BuildReport(log_path=self.log_path)
        log_path = report.log_path or self.log_path
        planner = RecipeExecutor(self.fetcher, variables=self.variables)
        graph.validate(lambda recipe: planner.recipe_variables(recipe, profile))
        ensure_install_tree(profile)
        report.plan(graph)

        with BuildLog(log_path, log_path.parent) as buildlog:
            executor = RecipeExecutor(
                self.fetcher, buildlog, variables=self.variables, cancel=self.cancel
            )
            for recipe in graph:
                if self.cancel.is_set():
                    self.log.warning("cancelled before %s", recipe.id)
                    report.cancelled = True
                    break
                result = executor.run(recipe, profile)
                report.record(result)
                buildlog.flush()
                if not result.failed:
                    continue
                if result.reason == REASON_CANCELLED:
                    self.log.error("%s: cancelled", recipe.id)
                    result.fatal = True
                    report.cancelled = True
                    break
                if not policy.fetch_errors_fatal and result.reason in (
                    REASON_FETCH,
                    REASON_UNPACK,
                ):
                    result.fatal = False
                if not result.fatal:
                    self.log.warning("%s failed (non-fatal), continuing", recipe.id)
                    continue
                if policy.halt_on_failure:
                    self.log.error("%s failed, halting pipeline", recipe.id)
                    break
                self.log.error("%s failed, continuing", recipe.id)
        return report


@dataclass(frozen=True)
class ManifestEntry:
    """Glob pattern template selecting artifacts to distribute."""

    pattern: str
    mandatory: bool = True
    dest: str = "bin"


class ArtifactCollector(ShellCmd):
    """Copies produced libraries and binaries into the distributable tree."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def source_dirs(self, profile: TargetProfile) -> list[Path]:
        """install bin/lib first, then the toolchain search roots"""
        dirs = [profile.bin_dir, profile.lib_dir]
        for root in profile.search_roots:
            dirs.extend([root / "bin", root / "lib"])
        return dirs

    def find(self, profile: TargetProfile, pattern: str) -> list[Path]:
        """files matching pattern, first match per filename wins"""
        found: dict[str, Path] = {}
        for directory in self.source_dirs(profile):
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.is_file() and fnmatch(path.name, pattern):
                    found.setdefault(path.name, path)
        return list(found.values())

    def collect(
        self, profile: TargetProfile, manifest: Iterable[ManifestEntry]
    ) -> dict[str, list[Path]]:
        """copy every manifest match into {dist}/bin or {dist}/lib

        Returns:
            mapping of expanded pattern to the copied destination paths

        Raises:
            MissingArtifactError: if a mandatory pattern matches nothing
        """
        entries = list(manifest)
        variables = profile.variables()
        matches: dict[str, tuple[ManifestEntry, list[Path]]] = {}
        missing: list[str] = []
        for entry in entries:
            pattern = expand(entry.pattern, variables)
            files = self.find(profile, pattern)
            if not files and entry.mandatory:
                missing.append(pattern)
            elif not files:
                self.log.warning("optional artifact not found: %s", pattern)
            matches[pattern] = (entry, files)
        if missing:
            self.fail(
                "mandatory artifacts not found: %s",
                ", ".join(missing),
                error=MissingArtifactError,
            )

        collected: dict[str, list[Path]] = {}
        for pattern, (entry, files) in matches.items():
            dest_dir = profile.dist_dir / entry.dest
            dest_dir.mkdir(parents=True, exist_ok=True)
            copied = []
            for f in files:
                self.copy(f, dest_dir / f.name)
                copied.append(dest_dir / f.name)
            collected[pattern] = copied
        return collected


# ----------------------------------------------------------------------------
# configuration

MINGW_CONFIGURE = (
    "./configure --host={host} --prefix={prefix} --enable-shared --disable-static"
)

DEFAULT_DEPENDENCIES = {
    "zlib": DependencyDescriptor(
        "zlib", "1.3.1", "https://zlib.net/fossils/{archive}", kind="tar.gz"
    ),
    "gmp": DependencyDescriptor(
        "gmp", "6.3.0", "https://gmplib.org/download/gmp/{archive}", kind="tar.xz"
    ),
    "mpfr": DependencyDescriptor(
        "mpfr", "4.2.1", "https://www.mpfr.org/mpfr-{ver}/{archive}", kind="tar.xz"
    ),
}


def default_recipes(
    descriptors: Mapping[str, DependencyDescriptor]
) -> list[Recipe]:
    """built-in recipe table: zlib, gmp, mpfr, the core project, installer"""
    return [
        make_recipe(
            "zlib",
            source=descriptors["zlib"],
            steps=[
                (
                    "compile",
                    "make -f win32/Makefile.gcc PREFIX={host}- -j{jobs}",
                ),
                (
                    "install",
                    "make -f win32/Makefile.gcc install SHARED_MODE=1 PREFIX={host}- "
                    "BINARY_PATH={bin} INCLUDE_PATH={include} LIBRARY_PATH={lib}",
                ),
            ],
            outputs=["{lib}/libz.dll.a", "{include}/zlib.h"],
        ),
        make_recipe(
            "gmp",
            source=descriptors["gmp"],
            steps=[
                ("configure", MINGW_CONFIGURE + " --enable-cxx"),
                ("compile", "make -j{jobs}"),
                ("install", "make install"),
            ],
            outputs=["{lib}/libgmp.dll.a", "{include}/gmp.h"],
        ),
        make_recipe(
            "mpfr",
            source=descriptors["mpfr"],
            steps=[
                ("configure", MINGW_CONFIGURE + " --with-gmp={prefix}"),
                ("compile", "make -j{jobs}"),
                ("install", "make install"),
            ],
            inputs=["{lib}/libgmp.dll.a", "{include}/gmp.h"],
            outputs=["{lib}/libmpfr.dll.a", "{include}/mpfr.h"],
            requires=["gmp"],
        ),
        make_recipe(
            "core",
            group="core",
            steps=[
                ("configure", MINGW_CONFIGURE + " --with-gmp={prefix} --with-zlib={prefix}"),
                ("compile", "make -j{jobs}"),
                ("install", "make install"),
            ],
            inputs=["{lib}/libgmp.dll.a", "{lib}/libz.dll.a"],
            outputs=["{bin}/{project}.exe"],
            requires=["zlib", "gmp"],
        ),
        make_recipe(
            "installer",
            group="installer",
            steps=[
                (
                    "install",
                    "makensis -DARCH={machine} -DDIST={dist} -DOUTDIR={root} "
                    "{root}/installer/{project}.nsi",
                ),
            ],
            inputs=["{root}/installer/{project}.nsi"],
            outputs=["{root}/{project}-{machine}-setup.exe"],
        ),
    ]


DEFAULT_MANIFEST: dict[str, list[ManifestEntry]] = {
    "32-bit": [
        ManifestEntry("{project}.exe"),
        ManifestEntry("lib{project}*.dll", mandatory=False),
        ManifestEntry("libgmp-*.dll"),
        ManifestEntry("libmpfr-*.dll"),
        ManifestEntry("zlib1.dll"),
        ManifestEntry("libgcc_s_dw2-1.dll"),
        ManifestEntry("libwinpthread-1.dll", mandatory=False),
        ManifestEntry("libstdc++-6.dll", mandatory=False),
    ],
    "64-bit": [
        ManifestEntry("{project}.exe"),
        ManifestEntry("lib{project}*.dll", mandatory=False),
        ManifestEntry("libgmp-*.dll"),
        ManifestEntry("libmpfr-*.dll"),
        ManifestEntry("zlib1.dll"),
        ManifestEntry("libgcc_s_seh-1.dll"),
        ManifestEntry("libwinpthread-1.dll", mandatory=False),
        ManifestEntry("libstdc++-6.dll", mandatory=False),
    ],
}


@dataclass
class Settings:
    """Operator overrides, each falling back to a built-in default."""

    target: str = DEFAULT_TARGET
    prefix: Optional[str] = None
    host: Optional[str] = None
    sysroot: Optional[str] = None
    project: str = DEFAULT_PROJECT
    jobs: int = DEFAULT_JOBS
    pins: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """read CROSSBUILD_* variables without modifying the environment"""
        environ = os.environ if environ is None else environ
        pins = {}
        pin_re = re.compile(rf"^{ENV_PREFIX}(\w+)_VERSION$")
        for key, value in environ.items():
            match = pin_re.match(key)
            if match and value:
                pins[match.group(1).lower()] = value
        jobs = envstr(f"{ENV_PREFIX}JOBS", None, environ)
        try:
            _jobs = int(jobs) if jobs else DEFAULT_JOBS
        except ValueError as e:
            raise ConfigError(f"{ENV_PREFIX}JOBS must be an integer: {jobs}") from e
        return cls(
            target=envstr(f"{ENV_PREFIX}TARGET", DEFAULT_TARGET, environ) or DEFAULT_TARGET,
            prefix=envstr(f"{ENV_PREFIX}PREFIX", None, environ),
            host=envstr(f"{ENV_PREFIX}HOST", None, environ),
            sysroot=envstr(f"{ENV_PREFIX}SYSROOT", None, environ),
            project=envstr(f"{ENV_PREFIX}PROJECT", DEFAULT_PROJECT, environ)
            or DEFAULT_PROJECT,
            jobs=_jobs,
            pins=pins,
        )


@dataclass
class ProjectConfig:
    """Recipes and artifact manifests for one project."""

    graph: BuildGraph
    manifest: dict[str, list[ManifestEntry]]
    project: Optional[str] = None

    def manifest_for(self, profile: TargetProfile) -> list[ManifestEntry]:
        return self.manifest.get(profile.arch, [])


def _descriptor_from_dict(name: str, data: Mapping[str, Any]) -> DependencyDescriptor:
    try:
        return DependencyDescriptor(
            name=name,
            version=str(data["version"]),
            url_template=data["url"],
            kind=data.get("kind", "tar.gz"),
            checksum=data.get("checksum"),
            checksum_algo=data.get("checksum_algo", "sha256"),
            archive_template=data.get("archive", "{name}-{ver}.{kind}"),
        )
    except KeyError as e:
        raise ConfigError(f"dependency '{name}' is missing {e.args[0]!r}") from e


def _recipe_from_dict(
    data: Mapping[str, Any], descriptors: Mapping[str, DependencyDescriptor]
) -> Recipe:
    try:
        recipe_id = data["id"]
        steps = [
            Step(s["kind"], s["command"], s.get("cwd")) for s in data["steps"]
        ]
    except (KeyError, TypeError) as e:
        raise ConfigError(f"malformed recipe {data!r}: missing {e}") from e
    source = None
    if data.get("source"):
        try:
            source = descriptors[data["source"]]
        except KeyError:
            raise ConfigError(
                f"recipe '{recipe_id}' uses unknown dependency '{data['source']}'"
            ) from None
    return make_recipe(
        recipe_id,
        steps=steps,
        group=data.get("group", "prerequisites"),
        source=source,
        inputs=data.get("inputs", []),
        outputs=data.get("outputs", []),
        requires=data.get("requires", []),
        variables=data.get("variables"),
        optional=bool(data.get("optional", False)),
    )


def load_config(
    path: Optional[Pathlike] = None, pins: Optional[Mapping[str, str]] = None
) -> ProjectConfig:
    """load recipes from a json file, or the built-in table if path is None

    Raises:
        ConfigError: if the file cannot be read or is malformed
    """
    pins = pins or {}
    if path is None:
        descriptors = {
            name: d.pinned(pins.get(name)) for name, d in DEFAULT_DEPENDENCIES.items()
        }
        return ProjectConfig(BuildGraph(default_recipes(descriptors)), DEFAULT_MANIFEST)

    try:
        with open(path, encoding="utf8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a json object")

    descriptors = {
        name: _descriptor_from_dict(name, d).pinned(pins.get(name))
        for name, d in data.get("dependencies", {}).items()
    }
    try:
        graph = BuildGraph(
            _recipe_from_dict(r, descriptors) for r in data.get("recipes", [])
        )
    except ValidationError as e:
        raise ConfigError(f"invalid recipe in {path}: {e}") from e
    manifest = {
        arch: [
            ManifestEntry(e["pattern"], e.get("mandatory", True), e.get("dest", "bin"))
            for e in entries
        ]
        for arch, entries in data.get("manifest", {}).items()
    }
    return ProjectConfig(graph, manifest, data.get("project"))


# ----------------------------------------------------------------------------
# orchestrator


class Orchestrator:
    """Ties a project, a target profile and a recipe config together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        config: Optional[ProjectConfig] = None,
        project: Optional[Project] = None,
        policy: Optional[BuildPolicy] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.config = config or load_config(pins=self.settings.pins)
        self.project = project or Project()
        self.policy = policy or BuildPolicy()
        self.cancel = cancel or threading.Event()
        arch = canonical_target(self.settings.target)
        prefix = self.settings.prefix or (
            self.project.install / TARGETS[arch]["machine"]
        )
        self.profile = resolve_target(
            self.settings.target,
            prefix=prefix,
            host=self.settings.host,
            sysroot=self.settings.sysroot,
            project=self.config.project or self.settings.project,
        )
        self.fetcher = Fetcher(
            self.project.downloads, self.project.src / self.profile.machine
        )
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.profile.project}' {self.profile.arch}>"

    @property
    def graph(self) -> BuildGraph:
        return self.config.graph

    @property
    def variables(self) -> dict[str, str]:
        """runner variables added to every recipe"""
        return {
            "root": str(self.project.root),
            "downloads": str(self.project.downloads),
            "patches": str(self.project.patches),
            "jobs": str(self.settings.jobs),
        }

    def runner(self) -> PipelineRunner:
        return PipelineRunner(
            self.fetcher, self.project.logs, variables=self.variables, cancel=self.cancel
        )

    def fetch_all(self) -> list[Path]:
        """fetch and unpack every dependency source"""
        self.project.setup()
        return [self.fetcher.ensure(d) for d in self.graph.descriptors()]

    def build_all(self, report: Optional[BuildReport] = None) -> BuildReport:
        """run every recipe except the installer"""
        self.project.setup()
        return self.runner().execute(
            self.graph.exclude("installer"), self.profile, self.policy, report
        )

    def build_one(self, recipe_id: str, with_requires: bool = True) -> BuildReport:
        """run one recipe, by default together with what it requires"""
        self.project.setup()
        if with_requires:
            graph = self.graph.closure(recipe_id)
        else:
            graph = self.graph.only(recipe_id)
        return self.runner().execute(graph, self.profile, self.policy)

    def clean(self, recipe_id: str) -> None:
        """remove a recipe's source tree and outputs so it rebuilds"""
        recipe = self.graph[recipe_id]
        executor = RecipeExecutor(self.fetcher, variables=self.variables)
        variables = executor.recipe_variables(recipe, self.profile)
        if recipe.source is not None:
            self.project.remove(self.fetcher.source_dir(recipe.source))
        for path in recipe.declared_outputs(variables):
            self.project.remove(path)
        self.log.info("cleaned %s", recipe_id)

    def collect(self) -> dict[str, list[Path]]:
        """copy distributable artifacts for this target"""
        collector = ArtifactCollector()
        return collector.collect(self.profile, self.config.manifest_for(self.profile))

    def package(self, report: Optional[BuildReport] = None) -> BuildReport:
        """collect artifacts then run the installer recipes"""
        self.collect()
        return self.runner().execute(
            self.graph.select("installer"), self.profile, self.policy, report
        )

    def full_release(self) -> BuildReport:
        """clean, fetch, build, collect and package"""
        self.log.info("full release for %s", self.profile.arch)
        self.project.reset(self.profile)
        self.fetch_all()
        runner = self.runner()
        report = runner.execute(
            self.graph.exclude("installer"), self.profile, self.policy
        )
        if not report.succeeded:
            self.log.error("build failed, not packaging")
            return report
        self.collect()
        return runner.execute(
            self.graph.select("installer"), self.profile, self.policy, report
        )

    def dry_run(self) -> None:
        """Display the build plan without building anything."""
        profile = self.profile
        executor = RecipeExecutor(self.fetcher, variables=self.variables)

        print("\n" + "=" * 60)
        print("BUILD PLAN (dry-run)")
        print("=" * 60)

        print("\n[Target]")
        print(f"  Architecture:      {profile.arch} ({profile.machine})")
        print(f"  Toolchain prefix:  {profile.host}")
        print(f"  Project:           {profile.project}")

        print("\n[Directories]")
        print(f"  Install root:      {profile.prefix}")
        print(f"  Include:           {profile.include_dir}")
        print(f"  Lib:               {profile.lib_dir}")
        print(f"  Bin:               {profile.bin_dir}")
        print(f"  Distribution:      {profile.dist_dir}")
        print(f"  Sources:           {self.fetcher.src}")
        for root in profile.search_roots:
            print(f"  Search root:       {root}")

        print(f"\n[Recipes] ({len(self.graph)})")
        for recipe in self.graph:
            variables = executor.recipe_variables(recipe, profile)
            state = "skip" if executor.outputs_present(recipe, variables) else "run"
            source = ""
            if recipe.source is not None:
                source = f" {recipe.source.name} {recipe.source.version}"
            print(f"  [{state}] {recipe.id:<12} {recipe.group:<14}{source}")

        manifest = self.config.manifest_for(profile)
        print(f"\n[Manifest] ({len(manifest)})")
        for entry in manifest:
            flag = "mandatory" if entry.mandatory else "optional"
            print(f"  {entry.dest}/{expand(entry.pattern, profile.variables())} ({flag})")

        print("\n" + "=" * 60)
        print("End of build plan. No changes were made.")
        print("=" * 60 + "\n")


def install_signal_handlers(cancel: threading.Event) -> None:
    """set cancel on SIGINT/SIGTERM so the running step is terminated"""

    def handler(signum: int, frame: Any) -> None:
        logging.getLogger("crossbuild").warning("received signal %s, cancelling", signum)
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, handler)


def parse_pins(pins: Optional[list[str]]) -> dict[str, str]:
    """parse NAME=VERSION pairs"""
    result = {}
    for pin in pins or []:
        name, sep, version = pin.partition("=")
        if not sep or not name or not version:
            raise ConfigError(f"invalid pin '{pin}', expected NAME=VERSION")
        result[name.lower()] = version
    return result


def main(argv: Optional[list[str]] = None) -> int:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="crossbuild",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="cross-compiles a project and its dependencies",
    )
    opt = parser.add_argument

    # fmt: off
    opt("-t", "--target", help="target architecture (default: $CROSSBUILD_TARGET or %s)" % DEFAULT_TARGET)
    opt("-p", "--prefix", help="install root (default: build/install/<machine>)", metavar="DIR")
    opt("-H", "--host", help="toolchain prefix, e.g. x86_64-w64-mingw32", metavar="TRIPLET")
    opt("-c", "--config", help="json recipe configuration", metavar="FILE")
    opt("-P", "--pin", help="pin a dependency version", action="append", metavar="NAME=VER")
    opt("-j", "--jobs", help="# of build jobs", type=int)
    opt("-k", "--keep-going", help="continue past failing recipes", action="store_true")
    opt("--skip-fetch-errors", help="treat fetch/unpack errors as non-fatal", action="store_true")
    opt("-r", "--report", help="write json build report to FILE", metavar="FILE")
    opt("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("fetch-all", help="fetch and unpack every dependency")
    sub.add_parser("build-all", help="build every recipe except the installer")
    one = sub.add_parser("build-one", help="build a single recipe")
    one.add_argument("recipe")
    one.add_argument("--no-deps", action="store_true", help="do not build requirements")
    clean = sub.add_parser("clean", help="remove a recipe's sources and outputs")
    clean.add_argument("recipe")
    sub.add_parser("full-release", help="clean, fetch, build, collect and package")
    sub.add_parser("collect", help="collect artifacts into the distribution tree")
    sub.add_parser("package", help="collect artifacts and build the installer")
    sub.add_parser("plan", help="show build plan without building")
    scan = sub.add_parser("scan", help="scan a pipeline log for failure signatures")
    scan.add_argument("logfile")

    args = parser.parse_args(argv)
    log = logging.getLogger("crossbuild")

    if args.command == "scan":
        try:
            matches = scan_log(args.logfile)
        except OSError as e:
            log.critical("cannot read log %s: %s", args.logfile, e)
            return EXIT_ORCHESTRATOR_ERROR
        for m in matches:
            print(f"{args.logfile}:{m.line_no}: [{m.recipe_id or '-'}] {m.text}")
        return 1 if matches else 0

    cancel = threading.Event()
    report: Optional[BuildReport] = None
    try:
        settings = Settings.from_env()
        if args.target:
            settings.target = args.target
        if args.prefix:
            settings.prefix = args.prefix
        if args.host:
            settings.host = args.host
        if args.jobs:
            settings.jobs = args.jobs
        settings.pins.update(parse_pins(args.pin))
        policy = BuildPolicy(
            halt_on_failure=not args.keep_going,
            fetch_errors_fatal=not args.skip_fetch_errors,
        )
        orchestrator = Orchestrator(
            settings,
            config=load_config(args.config, pins=settings.pins),
            policy=policy,
            cancel=cancel,
        )
        install_signal_handlers(cancel)

        if args.command == "plan":
            orchestrator.dry_run()
            return 0
        if args.command == "fetch-all":
            orchestrator.fetch_all()
            return 0
        if args.command == "clean":
            orchestrator.clean(args.recipe)
            return 0
        if args.command == "collect":
            orchestrator.collect()
            return 0
        if args.command == "build-all":
            report = orchestrator.build_all()
        elif args.command == "build-one":
            report = orchestrator.build_one(args.recipe, with_requires=not args.no_deps)
        elif args.command == "package":
            report = orchestrator.package()
        elif args.command == "full-release":
            report = orchestrator.full_release()
    except BuildError as e:
        log.critical("%s: %s", e.__class__.__name__, e)
        return EXIT_ORCHESTRATOR_ERROR

    assert report is not None
    print(report.summary())
    if args.report:
        report.write_json(args.report)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
