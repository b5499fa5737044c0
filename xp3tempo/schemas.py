"""XP3 Tempo - Pydantic models for run configuration.

RunConfig is the parsed configuration handed to the pipeline by the CLI
(or any other caller). Validation happens before anything on disk is touched.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from xp3tempo.config import DEFAULT_SPEED


class RunConfig(BaseModel):
    """Options for one pipeline run.

    speed == 1.0 means "no transcode pass"; the archive is still unpacked
    and, unless no_pack is set, repacked.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    input: Path = Field(
        ...,
        description="XP3 archive, or a directory holding the files to process",
    )
    speed: float = Field(
        default=DEFAULT_SPEED,
        gt=0,
        allow_inf_nan=False,
        description="Tempo multiplier applied to every Ogg member",
    )
    no_pack: bool = Field(
        default=False,
        description="Stop after transcoding and leave the working directory on disk",
    )

    @field_validator("input")
    @classmethod
    def _input_must_exist(cls, value: Path) -> Path:
        if not value.exists():
            raise ValueError(f"input path does not exist: {value}")
        if not (value.is_file() or value.is_dir()):
            raise ValueError(f"input must be a file or a directory: {value}")
        resolved = value.resolve()
        # A root has no name to derive the output archive from
        if not resolved.name:
            raise ValueError(f"input must not be a filesystem root: {value}")
        return resolved

    @property
    def input_is_archive(self) -> bool:
        return self.input.is_file()
