"""Step identity computation.

This module handles:
- Canonical input snapshot creation for a step
- Deterministic hash computation over normalized inputs

A step's identity is a pure function of its command, its parent
identity, the content of copied build-context files and the identities
of stages it copies from. Mount caches contribute their declaration
(name and mount point) only; their content is never read here.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from stagecache.graph.schema import FileSourceSchema, StageSourceSchema

if TYPE_CHECKING:
    from stagecache.graph.context import BuildContext
    from stagecache.graph.schema import StepSchema

# Schema version for identity format; bump when the identity format changes
IDENTITY_SCHEMA_VERSION = "1"

# Identity of the empty base filesystem
SCRATCH_IDENTITY = "sha256:" + hashlib.sha256(b"stagecache:scratch").hexdigest()


@dataclass
class StepInputs:
    """Canonical representation of everything that determines a step's output.

    It is serialized to JSON and hashed to produce the step identity.

    Attributes:
        schema_version: Version of the identity schema.
        command: Command string or argument list.
        parent: Identity of the filesystem the step runs on.
        sources: Resolved copy sources, in declaration order.
        mounts: Mount cache declarations (name and target only).
        env: Environment variables.
        workdir: Working directory in the image.
        output: Produced output kind.
    """

    schema_version: str = IDENTITY_SCHEMA_VERSION
    command: str | list[str] = ""
    parent: str = SCRATCH_IDENTITY
    sources: list[dict[str, Any]] = field(default_factory=list)
    mounts: list[dict[str, str]] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    workdir: str = "/"
    output: str = "layer"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def resolve_sources(
    step: StepSchema,
    context: BuildContext,
    stage_identities: dict[str, str],
) -> list[dict[str, Any]]:
    """Resolve a step's copy sources to content identities.

    Args:
        step: Step whose sources are resolved.
        context: Build context used to hash copied files.
        stage_identities: Identities of already planned stages.

    Returns:
        List of normalized source descriptions, in declaration order.

    Raises:
        BuildContextError: If a copied file cannot be read.
        KeyError: If a referenced stage has not been planned yet.
    """
    resolved: list[dict[str, Any]] = []
    for source in step.sources:
        if isinstance(source, FileSourceSchema):
            resolved.append(
                {
                    "kind": "file",
                    "content": context.content_hash(source.file),
                    "dest": source.dest,
                }
            )
        elif isinstance(source, StageSourceSchema):
            resolved.append(
                {
                    "kind": "stage",
                    "identity": stage_identities[source.from_stage],
                    "path": source.path,
                    "dest": source.effective_dest,
                }
            )
    return resolved


def create_step_inputs(
    step: StepSchema,
    parent: str,
    context: BuildContext,
    stage_identities: dict[str, str],
) -> StepInputs:
    """Create canonical step inputs.

    Args:
        step: Step schema.
        parent: Identity of the filesystem the step runs on.
        context: Build context used to hash copied files.
        stage_identities: Identities of already planned stages.

    Returns:
        StepInputs instance with all normalized inputs.
    """
    return StepInputs(
        schema_version=IDENTITY_SCHEMA_VERSION,
        command=step.run if isinstance(step.run, str) else list(step.run),
        parent=parent,
        sources=resolve_sources(step, context, stage_identities),
        mounts=[{"cache": m.cache, "target": m.target} for m in step.mounts],
        env=dict(sorted(step.env.items())),
        workdir=step.workdir,
        output=step.output.value,
    )


def compute_step_identity(inputs: StepInputs) -> str:
    """Compute a step identity from its inputs.

    The identity is a SHA-256 hash of the canonical JSON representation
    of the step inputs.

    Args:
        inputs: StepInputs instance.

    Returns:
        Identity as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def identify_step(
    step: StepSchema,
    parent: str,
    context: BuildContext,
    stage_identities: dict[str, str],
) -> tuple[str, StepInputs]:
    """Convenience function to compute a step identity directly.

    Returns:
        Tuple of (identity, StepInputs).
    """
    inputs = create_step_inputs(step, parent, context, stage_identities)
    return compute_step_identity(inputs), inputs


__all__ = [
    "IDENTITY_SCHEMA_VERSION",
    "SCRATCH_IDENTITY",
    "StepInputs",
    "compute_step_identity",
    "create_step_inputs",
    "identify_step",
    "resolve_sources",
]
