from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    duration_sec: float | None = Field(
        default=None,
        alias="durationSec",
        description="Probed length of uploaded audio",
    )


class ErrorResponse(BaseModel):
    error: str
