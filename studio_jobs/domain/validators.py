from __future__ import annotations

from typing import Any, Dict, Type, Union

import pydantic

from studio_jobs.domain.enums import JobKind
from studio_jobs.domain.errors import ValidationError
from studio_jobs.domain.models import AvatarParameters, ImageParameters, VideoParameters

KindParameters = Union[ImageParameters, AvatarParameters, VideoParameters]

_PARAMETER_MODELS: Dict[JobKind, Type[pydantic.BaseModel]] = {
    JobKind.image: ImageParameters,
    JobKind.avatar: AvatarParameters,
    JobKind.video: VideoParameters,
}


def _first_error(e: pydantic.ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    err = errs[0]
    loc = ".".join(str(x) for x in err.get("loc") or ())
    msg = str(err.get("msg") or "invalid value")
    # model_validator errors carry no location and a "Value error, " prefix
    msg = msg.removeprefix("Value error, ")
    return f"{loc}: {msg}" if loc else msg


def parse_parameters(kind: JobKind, raw: Dict[str, Any]) -> KindParameters:
    model = _PARAMETER_MODELS.get(kind)
    if model is None:
        raise ValidationError(f"unsupported job kind: {kind}")
    if not isinstance(raw, dict):
        raise ValidationError("parameters must be an object")
    try:
        return model.model_validate(raw)  # type: ignore[return-value]
    except pydantic.ValidationError as e:
        raise ValidationError(_first_error(e), details={"errors": e.errors(include_url=False, include_context=False, include_input=False)}) from e


def validate_max_retries(value: Any, ceiling: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError("max_retries must be an integer")
    if n < 0 or n > ceiling:
        raise ValidationError(f"max_retries must be between 0 and {ceiling}")
    return n
