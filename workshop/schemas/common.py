from pydantic import BaseModel, Field, model_validator

HHMM_PATTERN = r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$"


class TimeRange(BaseModel):
    start: str = Field(pattern=HHMM_PATTERN)
    end: str = Field(pattern=HHMM_PATTERN)

    @model_validator(mode="after")
    def _end_after_start(self):
        # Same-day ranges only; "HH:MM" strings compare chronologically
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self
