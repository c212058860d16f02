"""Request and response models for build operations."""

from pydantic import BaseModel, Field, field_validator

from models.entities import DeployStatus


class DeployBuildRequest(BaseModel):
    """Request model for deploying a build."""

    run_uuid: str | None = Field(
        default=None, description="Run id to stamp on every deploy; generated per deploy when omitted"
    )

    @field_validator("run_uuid")
    @classmethod
    def validate_run_uuid(cls, v: str | None) -> str | None:
        """Validate run UUID is not blank when given."""
        if v is None:
            return v
        if not v.strip():
            msg = "Run UUID cannot be empty"
            raise ValueError(msg)
        return v.strip()


class DeployOutcome(BaseModel):
    """Result of orchestrating a single deploy."""

    deploy_uuid: str
    success: bool
    status: DeployStatus | None = None
    status_message: str | None = None


class DeployBuildResponse(BaseModel):
    """Response model for deploy operations."""

    build_uuid: str
    run_uuid: str | None = None
    success: bool
    deploys: list[DeployOutcome] = Field(default_factory=list)
