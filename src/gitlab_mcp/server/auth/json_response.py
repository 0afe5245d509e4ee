from typing import Any

from pydantic import BaseModel
from starlette.responses import JSONResponse

from gitlab_mcp.server.auth.errors import OAuthError


class PydanticJSONResponse(JSONResponse):
    def render(self, content: Any) -> bytes:
        return content.model_dump_json(exclude_none=True).encode("utf-8")


def oauth_error_response(error: OAuthError, headers: dict[str, str] | None = None) -> PydanticJSONResponse:
    return PydanticJSONResponse(
        content=error.error_response(),
        status_code=error.status_code,
        headers=headers,
    )


def no_store_response(content: BaseModel, status_code: int = 200) -> PydanticJSONResponse:
    return PydanticJSONResponse(
        content=content,
        status_code=status_code,
        headers={
            "Cache-Control": "no-store",
            "Pragma": "no-cache",
        },
    )
