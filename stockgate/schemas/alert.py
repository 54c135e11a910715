from pydantic import BaseModel, ConfigDict, Field, field_validator


class AlertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str | None = None
    symbol: str | None = None
    condition: str | None = None
    target_price: float | None = Field(default=None, alias="targetPrice")

    @field_validator("email", "symbol", "condition")
    @classmethod
    def strip_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str | None) -> str | None:
        return value.upper() if value else value

    @field_validator("target_price", mode="before")
    @classmethod
    def blank_price_is_missing(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class AlertAccepted(BaseModel):
    success: bool
    message: str
