"""HTTP client for the OTP delivery and verification service."""

from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from authflow.core.config import settings
from authflow.core.exceptions import ExternalServiceException, RateLimitExceededException
from authflow.core.logging_config import get_logger
from authflow.schemas.otp import (
    RequestCodeRequest,
    RequestCodeResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)

logger = get_logger(__name__)

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


class OTPService(Protocol):
    """The three purpose-scoped operations of the OTP service."""

    async def request_code(self, request: RequestCodeRequest) -> RequestCodeResponse: ...

    async def verify_code(self, request: VerifyCodeRequest) -> VerifyCodeResponse: ...

    async def reset_password(self, request: ResetPasswordRequest) -> ResetPasswordResponse: ...


class OTPServiceClient:
    """OTP service over the hosted edge functions.

    Rejections (wrong code, delivery failure) come back as response models with
    ``error`` set. Throttling and transport or server failures raise.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.functions_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        self.client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    async def _invoke(self, function: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(
                f"{self.base_url}/{function}",
                json=payload,
                headers={"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error("otp_service_unreachable", function=function, error=str(e))
            raise ExternalServiceException(function, "network error") from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitExceededException(int(retry_after) if retry_after and retry_after.isdigit() else None)
        if response.status_code >= 500:
            logger.error("otp_service_error", function=function, status_code=response.status_code)
            raise ExternalServiceException(function, f"status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceException(function, "malformed response") from e

    @staticmethod
    def _parse(function: str, model: type[ResponseModel], data: Any) -> ResponseModel:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error("otp_service_bad_response", function=function, errors=e.error_count())
            raise ExternalServiceException(function, "malformed response") from e

    async def request_code(self, request: RequestCodeRequest) -> RequestCodeResponse:
        data = await self._invoke("send-otp", request.model_dump(by_alias=True, exclude_none=True, mode="json"))
        return self._parse("send-otp", RequestCodeResponse, data)

    async def verify_code(self, request: VerifyCodeRequest) -> VerifyCodeResponse:
        data = await self._invoke("verify-otp", request.model_dump(by_alias=True, mode="json"))
        return self._parse("verify-otp", VerifyCodeResponse, data)

    async def reset_password(self, request: ResetPasswordRequest) -> ResetPasswordResponse:
        data = await self._invoke("reset-password", request.model_dump(by_alias=True, mode="json"))
        return self._parse("reset-password", ResetPasswordResponse, data)

    async def close(self) -> None:
        await self.client.aclose()
