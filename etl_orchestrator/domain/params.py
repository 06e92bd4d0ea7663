from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from etl_orchestrator.domain.errors import InvalidParamsError

DEFAULT_STEPS = ("extract", "load", "enrich")


class RunParams(BaseModel):
    """
    Parameter document of a run.

    ``period`` and ``q`` identify the run (together with the job type) and are
    always present once validated. Everything the orchestrator does not know
    about is kept as an extra field and handed back by ``to_document()``.
    """

    model_config = ConfigDict(extra="allow")

    period: str = Field(min_length=1)
    q: str = Field(min_length=1)
    dry_run: bool = Field(
        default=False,
        validation_alias=AliasChoices("dry_run", "dryRun", "dry-run"),
    )
    steps: list[str] = Field(default_factory=lambda: list(DEFAULT_STEPS))

    @field_validator("period", "q", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def _clean_steps(cls, value: Any) -> Any:
        if value is None:
            return list(DEFAULT_STEPS)
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            steps = [str(s).strip() for s in value if s is not None and str(s).strip()]
            return steps or list(DEFAULT_STEPS)
        return value

    @classmethod
    def from_document(cls, document: Any) -> "RunParams":
        if not isinstance(document, dict):
            raise InvalidParamsError(f"params must be an object, got {type(document).__name__}")
        try:
            return cls.model_validate(document)
        except ValidationError as e:
            raise InvalidParamsError(str(e)) from e

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_args(self) -> list[str]:
        args = ["--period", self.period, "--q", self.q]
        if self.dry_run:
            args.append("--dry-run")
        if self.steps:
            args += ["--steps", ",".join(self.steps)]
        return args
