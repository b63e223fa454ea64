"""Pydantic models for stage graph validation.

This module defines the Pydantic models describing a build: named
stages, each an ordered list of steps with their input sources and
mount-cache declarations. Shape is checked by the field validators;
cross-stage references are checked by ``StageGraphSchema.validate_references``.
"""

import re
import shlex
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stagecache.types import OutputKind

STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")
MOUNT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")


class GraphValidationError(Exception):
    """Raised when a stage graph is structurally invalid.

    Attributes:
        reference: The offending stage reference, if any.
        code: Stable error code.
    """

    def __init__(
        self,
        message: str,
        reference: str | None = None,
        code: str = "invalid_graph",
    ) -> None:
        super().__init__(message)
        self.reference = reference
        self.code = code


def _validate_image_path(v: str, field_name: str) -> str:
    """Validate an absolute, normalized path inside the image."""
    if not v.startswith("/"):
        raise ValueError(f"{field_name} must start with '/'")
    parts = [p for p in v.split("/") if p]
    if any(p in (".", "..") for p in parts):
        raise ValueError(f"{field_name} must not contain '.' or '..' segments")
    return "/" + "/".join(parts)


class FileSourceSchema(BaseModel):
    """Copy a file or directory from the build context into the image.

    Attributes:
        file: Path relative to the build context root.
        dest: Destination path inside the image (must start with /).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    file: Annotated[str, Field(min_length=1, description="Build context path")]
    dest: str = Field(description="Destination path in image (must start with /)")

    @field_validator("dest")
    @classmethod
    def validate_dest(cls, v: str) -> str:
        """Validate dest is an absolute image path."""
        return _validate_image_path(v, "dest")


class StageSourceSchema(BaseModel):
    """Copy artifacts from an earlier stage's resulting filesystem.

    Attributes:
        from_stage: Name of an earlier-declared stage.
        path: Subtree of that stage's filesystem to copy.
        dest: Destination path in the image; defaults to ``path``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    from_stage: Annotated[str, Field(min_length=1, description="Source stage name")]
    path: str = Field(default="/", description="Subtree to copy from the stage")
    dest: str | None = Field(default=None, description="Destination path in image")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate path is an absolute image path."""
        return _validate_image_path(v, "path")

    @field_validator("dest")
    @classmethod
    def validate_dest(cls, v: str | None) -> str | None:
        """Validate dest is an absolute image path."""
        if v is None:
            return v
        return _validate_image_path(v, "dest")

    @property
    def effective_dest(self) -> str:
        """Destination path, falling back to the source path."""
        return self.dest if self.dest is not None else self.path


class MountCacheSchema(BaseModel):
    """Declare a persistent mount cache for the duration of a step.

    Attributes:
        cache: Mount cache name (scoped per platform).
        target: Mount point inside the image while the step runs.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    cache: Annotated[str, Field(min_length=1, max_length=255)]
    target: str = Field(description="Mount point in image (must start with /)")

    @field_validator("cache")
    @classmethod
    def validate_cache(cls, v: str) -> str:
        """Validate mount cache name is filesystem safe."""
        if not MOUNT_NAME_PATTERN.match(v):
            raise ValueError(
                f"cache must match pattern {MOUNT_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        """Validate target is an absolute image path other than the root."""
        normalized = _validate_image_path(v, "target")
        if normalized == "/":
            raise ValueError("target must not be the image root")
        return normalized


class StepSchema(BaseModel):
    """A single unit of build work.

    Attributes:
        run: Shell command string, or an argument list run without a shell.
        name: Optional label used in reports.
        sources: Ordered copy sources applied before the command runs.
        mounts: Mount caches attached while the command runs.
        env: Extra environment variables for the command.
        workdir: Working directory inside the image.
        output: Whether the step produces a filesystem layer.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    run: str | list[str] = Field(description="Command to run")
    name: str | None = Field(default=None, description="Step label")
    sources: list[FileSourceSchema | StageSourceSchema] = Field(
        default_factory=list, description="Ordered copy sources"
    )
    mounts: list[MountCacheSchema] = Field(
        default_factory=list, description="Mount caches"
    )
    env: dict[str, str] = Field(default_factory=dict, description="Environment")
    workdir: str = Field(default="/", description="Working directory in image")
    output: OutputKind = Field(default=OutputKind.LAYER, description="Output kind")

    @field_validator("run")
    @classmethod
    def validate_run(cls, v: str | list[str]) -> str | list[str]:
        """Validate the command is not empty."""
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("run must not be empty")
        elif not v or not v[0]:
            raise ValueError("run argument list must not be empty")
        return v

    @field_validator("workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        """Validate workdir is an absolute image path."""
        return _validate_image_path(v, "workdir")

    @field_validator("mounts")
    @classmethod
    def validate_mounts(cls, v: list[MountCacheSchema]) -> list[MountCacheSchema]:
        """Validate mount names and targets are not declared twice."""
        names = [m.cache for m in v]
        if len(set(names)) != len(names):
            raise ValueError("a mount cache may only be attached once per step")
        targets = [m.target for m in v]
        for i, a in enumerate(targets):
            for b in targets[i + 1 :]:
                if a == b or a.startswith(b + "/") or b.startswith(a + "/"):
                    raise ValueError(f"mount targets overlap: {a}, {b}")
        return v

    def command_text(self) -> str:
        """Return a printable form of the command."""
        if isinstance(self.run, str):
            return self.run
        return shlex.join(self.run)


class StageSchema(BaseModel):
    """A named sequence of steps sharing one filesystem lineage.

    Attributes:
        name: Unique stage name.
        base: Earlier stage whose result is this stage's base filesystem,
              or None for an empty filesystem.
        steps: Ordered steps.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=128)]
    base: str | None = Field(default=None, description="Base stage name")
    steps: list[StepSchema] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate stage name matches safe pattern."""
        if not STAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {STAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    def referenced_stages(self) -> list[str]:
        """Return every stage name this stage depends on, in order."""
        refs: list[str] = []
        if self.base is not None:
            refs.append(self.base)
        for step in self.steps:
            for source in step.sources:
                if isinstance(source, StageSourceSchema) and source.from_stage not in refs:
                    refs.append(source.from_stage)
        return refs


class StageGraphSchema(BaseModel):
    """A complete build description.

    Attributes:
        stages: Stages in declaration order. The last one is the default target.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    stages: list[StageSchema] = Field(min_length=1)

    def validate_references(self) -> None:
        """Validate stage names and cross-stage references.

        Stage names must be unique and a stage may only reference stages
        declared before it, which keeps the graph acyclic.

        Raises:
            GraphValidationError: On duplicate names or bad references.
        """
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise GraphValidationError(
                    f"Duplicate stage name: {stage.name}",
                    reference=stage.name,
                    code="duplicate_stage",
                )
            for ref in stage.referenced_stages():
                if ref == stage.name:
                    raise GraphValidationError(
                        f"Stage '{stage.name}' references itself",
                        reference=ref,
                        code="cyclic_reference",
                    )
                if ref not in seen:
                    known = {s.name for s in self.stages}
                    if ref in known:
                        raise GraphValidationError(
                            f"Stage '{stage.name}' references '{ref}' "
                            "which is declared later",
                            reference=ref,
                            code="forward_reference",
                        )
                    raise GraphValidationError(
                        f"Stage '{stage.name}' references undeclared stage '{ref}'",
                        reference=ref,
                        code="unknown_stage",
                    )
            seen.add(stage.name)

    def get_stage(self, name: str) -> StageSchema:
        """Return a stage by name.

        Raises:
            GraphValidationError: If no stage has that name.
        """
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise GraphValidationError(
            f"Unknown target stage: {name}", reference=name, code="unknown_stage"
        )

    def required_stages(self, target: str | None = None) -> list[StageSchema]:
        """Return the stages needed to build ``target``, in declaration order.

        Args:
            target: Target stage name; defaults to the last declared stage.

        Returns:
            The target stage and all stages it transitively references.
        """
        target_stage = self.stages[-1] if target is None else self.get_stage(target)
        by_name = {s.name: s for s in self.stages}
        needed: set[str] = set()
        pending = [target_stage.name]
        while pending:
            name = pending.pop()
            if name in needed:
                continue
            needed.add(name)
            pending.extend(by_name[name].referenced_stages())
        return [s for s in self.stages if s.name in needed]


__all__ = [
    "FileSourceSchema",
    "GraphValidationError",
    "MountCacheSchema",
    "StageGraphSchema",
    "StageSchema",
    "StageSourceSchema",
    "StepSchema",
]
