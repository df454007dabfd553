# pixelgate/core/options.py
"""
Query-string parameter models.

Parameters travel as flat key/value pairs (``?width=300&type=webp``); the
pipeline endpoint additionally carries a JSON array of step objects under
``operations``.  Everything is parsed into pydantic models here so the
operations never see raw strings.
"""
from __future__ import annotations

import json
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from pixelgate.core.errors import InvalidInputError


class PipelineStep(BaseModel):
    """One ``{operation, params, ignoreFailure}`` entry of a pipeline."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., alias="operation")
    params: dict[str, Any] = Field(default_factory=dict)
    ignore_failure: bool = Field(default=False, alias="ignoreFailure")


class ImageOptions(BaseModel):
    """Operation parameters shared by every endpoint."""

    model_config = ConfigDict(extra="ignore")

    # Geometry
    width: int = 0
    height: int = 0
    areawidth: int = 0
    areaheight: int = 0
    top: int = 0
    left: int = 0
    factor: int = 0
    rotate: int = 0
    gravity: str = ""
    force: bool = False
    nocrop: bool | None = None
    norotation: bool = False
    flip: bool = False
    flop: bool = False

    # Output
    type: str = ""
    quality: int = Field(default=0, ge=0, le=100)
    compression: int = Field(default=0, ge=0, le=9)
    interlace: bool = False
    stripmeta: bool = False
    noprofile: bool = False
    colorspace: str = ""
    background: list[int] = Field(default_factory=list)

    # Blur
    sigma: float = 0.0
    minampl: float = 0.0

    # Watermarks
    text: str = ""
    font: str = ""
    dpi: int = 0
    margin: int = 0
    textwidth: int = 0
    opacity: float = 0.0
    noreplicate: bool = False
    color: list[int] = Field(default_factory=list)
    image: str = ""

    # Pipeline
    operations: list[PipelineStep] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def drop_empty_values(cls, data: Any) -> Any:
        # "?width=&height=200" means width was not given
        if isinstance(data, Mapping):
            return {k: v for k, v in data.items() if v != ""}
        return data

    @field_validator("color", "background", mode="before")
    @classmethod
    def parse_rgb(cls, v: Any) -> Any:
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            try:
                values = [int(p) for p in parts]
            except ValueError:
                raise ValueError("must be a comma-separated list of integers")
            if any(not 0 <= c <= 255 for c in values):
                raise ValueError("color components must be within 0..255")
            return values
        return v

    @field_validator("operations", mode="before")
    @classmethod
    def parse_operations(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"invalid JSON: {e.msg}")
            if not isinstance(v, list):
                raise ValueError("must be a JSON array of operations")
        return v

    @property
    def rgb_color(self) -> tuple[int, int, int] | None:
        if len(self.color) > 2:
            return self.color[0], self.color[1], self.color[2]
        return None

    @property
    def rgb_background(self) -> tuple[int, int, int] | None:
        if len(self.background) > 2:
            return self.background[0], self.background[1], self.background[2]
        return None


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def parse_options(params: Mapping[str, Any]) -> ImageOptions:
    """
    Build ImageOptions from query parameters or pipeline step params.

    Raises:
        InvalidInputError: If any parameter has the wrong type or range
    """
    try:
        return ImageOptions.model_validate(dict(params))
    except ValidationError as e:
        raise InvalidInputError(f"Error while processing parameters: {_describe(e)}")
