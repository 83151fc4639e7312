"""Runner registry: language identifier → LanguageDescriptor.

The registry is populated once at construction and exposed through a
read-only mapping, so concurrent lookups need no locking.

Command templates are argv lists with three placeholders, substituted per
execution:

- ``{source}``: absolute path of the materialized source file
- ``{artifact}``: absolute path of the compile step's output
- ``{workdir}``: the execution's working directory
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType

from exec_broker._logging import get_logger
from exec_broker.exceptions import UnsupportedLanguageError
from exec_broker.models import InvocationKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class LanguageDescriptor:
    """How to compile and run one language."""

    identifier: str
    kind: InvocationKind
    source_filename: str
    run_command: tuple[str, ...] = ()
    compile_command: tuple[str, ...] | None = None
    artifact: str | None = None
    enabled: bool = True
    allows_empty_source: bool = True
    # JVM and V8 reserve large virtual ranges up front; RLIMIT_AS would
    # break them, so only the resident-set watchdog applies.
    limit_address_space: bool = True
    aliases: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.kind is InvocationKind.COMPILED and not self.compile_command:
            raise ValueError(f"{self.identifier}: compiled languages need a compile_command")
        if self.kind is not InvocationKind.COMPILED and self.compile_command:
            raise ValueError(f"{self.identifier}: only compiled languages take a compile_command")
        if self.kind is not InvocationKind.MARKUP and not self.run_command:
            raise ValueError(f"{self.identifier}: executable languages need a run_command")

    @property
    def is_markup(self) -> bool:
        return self.kind is InvocationKind.MARKUP

    @property
    def requires_compile(self) -> bool:
        return self.compile_command is not None

    def render_compile(self, workdir: Path) -> list[str]:
        """Substitute placeholders in the compile template."""
        if self.compile_command is None:
            raise ValueError(f"{self.identifier} has no compile step")
        return self._render(self.compile_command, workdir)

    def render_run(self, workdir: Path) -> list[str]:
        """Substitute placeholders in the run template."""
        return self._render(self.run_command, workdir)

    def artifact_path(self, workdir: Path) -> Path | None:
        return workdir / self.artifact if self.artifact else None

    def _render(self, template: tuple[str, ...], workdir: Path) -> list[str]:
        values = {
            "source": str(workdir / self.source_filename),
            "artifact": str(workdir / self.artifact) if self.artifact else "",
            "workdir": str(workdir),
        }
        return [part.format(**values) for part in template]


DEFAULT_LANGUAGES: tuple[LanguageDescriptor, ...] = (
    LanguageDescriptor(
        identifier="python",
        kind=InvocationKind.INTERPRETED,
        source_filename="main.py",
        run_command=("python3", "-u", "{source}"),
        aliases=("python3", "py"),
    ),
    LanguageDescriptor(
        identifier="javascript",
        kind=InvocationKind.INTERPRETED,
        source_filename="main.js",
        run_command=("node", "{source}"),
        limit_address_space=False,
        aliases=("js", "node"),
    ),
    LanguageDescriptor(
        identifier="typescript",
        kind=InvocationKind.COMPILED,
        source_filename="main.ts",
        compile_command=("tsc", "--outDir", "{workdir}", "{source}"),
        artifact="main.js",
        run_command=("node", "{artifact}"),
        limit_address_space=False,
        aliases=("ts",),
    ),
    LanguageDescriptor(
        identifier="java",
        kind=InvocationKind.COMPILED,
        source_filename="Main.java",
        compile_command=("javac", "-d", "{workdir}", "{source}"),
        artifact="Main.class",
        run_command=("java", "-cp", "{workdir}", "Main"),
        limit_address_space=False,
    ),
    LanguageDescriptor(
        identifier="kotlin",
        kind=InvocationKind.COMPILED,
        source_filename="main.kt",
        compile_command=("kotlinc", "{source}", "-include-runtime", "-d", "{artifact}"),
        artifact="main.jar",
        run_command=("java", "-jar", "{artifact}"),
        limit_address_space=False,
        aliases=("kt",),
    ),
    LanguageDescriptor(
        identifier="groovy",
        kind=InvocationKind.INTERPRETED,
        source_filename="main.groovy",
        run_command=("groovy", "{source}"),
        limit_address_space=False,
    ),
    LanguageDescriptor(
        identifier="c",
        kind=InvocationKind.COMPILED,
        source_filename="main.c",
        compile_command=("gcc", "-O0", "-o", "{artifact}", "{source}", "-lm"),
        artifact="main",
        run_command=("{artifact}",),
        allows_empty_source=False,
    ),
    LanguageDescriptor(
        identifier="cpp",
        kind=InvocationKind.COMPILED,
        source_filename="main.cpp",
        compile_command=("g++", "-O0", "-o", "{artifact}", "{source}"),
        artifact="main",
        run_command=("{artifact}",),
        allows_empty_source=False,
        aliases=("c++",),
    ),
    LanguageDescriptor(
        identifier="swift",
        kind=InvocationKind.COMPILED,
        source_filename="main.swift",
        compile_command=("swiftc", "-o", "{artifact}", "{source}"),
        artifact="main",
        run_command=("{artifact}",),
        limit_address_space=False,
    ),
    LanguageDescriptor(
        identifier="bash",
        kind=InvocationKind.INTERPRETED,
        source_filename="main.sh",
        run_command=("bash", "{source}"),
        aliases=("sh",),
    ),
    LanguageDescriptor(
        identifier="html",
        kind=InvocationKind.MARKUP,
        source_filename="index.html",
    ),
)


class RunnerRegistry:
    """Read-only, case-insensitive language lookup.

    Attributes:
        descriptors: Immutable mapping of canonical identifier → descriptor
    """

    def __init__(
        self,
        descriptors: Iterable[LanguageDescriptor] = DEFAULT_LANGUAGES,
        *,
        disabled: Iterable[str] = (),
    ) -> None:
        disabled_set = {name.lower() for name in disabled}
        canonical: dict[str, LanguageDescriptor] = {}
        index: dict[str, str] = {}

        for descriptor in descriptors:
            key = descriptor.identifier.lower()
            if key in canonical:
                raise ValueError(f"Duplicate language identifier: {descriptor.identifier}")
            if key in disabled_set and descriptor.enabled:
                descriptor = replace(descriptor, enabled=False)
            canonical[key] = descriptor
            for name in (key, *(alias.lower() for alias in descriptor.aliases)):
                if name in index and index[name] != key:
                    raise ValueError(f"Language name {name!r} maps to both {index[name]} and {key}")
                index[name] = key

        unknown = disabled_set - index.keys()
        if unknown:
            logger.warning(
                "Ignoring unknown languages in disabled list",
                extra={"languages": sorted(unknown)},
            )

        self.descriptors: Mapping[str, LanguageDescriptor] = MappingProxyType(canonical)
        self._index: Mapping[str, str] = MappingProxyType(index)

    def lookup(self, identifier: str) -> LanguageDescriptor | None:
        """Return the descriptor for identifier (case-insensitive, exact), or None."""
        key = self._index.get(identifier.strip().lower())
        return self.descriptors[key] if key is not None else None

    def resolve(self, identifier: str) -> LanguageDescriptor:
        """Return the enabled descriptor for identifier.

        Raises:
            UnsupportedLanguageError: Identifier is unknown or disabled
        """
        descriptor = self.lookup(identifier)
        if descriptor is None:
            raise UnsupportedLanguageError(f"Unsupported language: {identifier}", language=identifier)
        if not descriptor.enabled:
            raise UnsupportedLanguageError(
                f"Language is disabled: {identifier}",
                language=identifier,
                context={"reason": "disabled"},
            )
        return descriptor

    def identifiers(self) -> list[str]:
        """Canonical identifiers of enabled languages, sorted."""
        return sorted(key for key, descriptor in self.descriptors.items() if descriptor.enabled)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.lookup(identifier) is not None

    def __len__(self) -> int:
        return len(self.descriptors)
