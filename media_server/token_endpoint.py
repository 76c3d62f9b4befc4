"""
Token endpoint (POST /oauth/token). client_credentials grant for admin API clients.
Every request is rate limited per caller IP by the issuer; bad credentials get one generic invalid_client.
"""
from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse

from media_server.client_auth import get_client_credentials_from_request
from media_server.dependencies import get_token_issuer
from media_server.errors import InvalidClientError, RateLimitedError, UnsupportedGrantTypeError
from media_server.rate_limit import get_client_ip
from media_server.tokens import TokenIssuer

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@router.api_route("/oauth/token", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def token_method_not_allowed():
    return JSONResponse({"error": "Method not allowed"}, status_code=405, headers={"Allow": "POST"})


@router.post("/oauth/token")
def token(
    request: Request,
    grant_type: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """
    client_credentials: authenticate the client (Basic or form) and return a short-lived
    Bearer access token signed with the current key.
    """
    credentials = get_client_credentials_from_request(request, client_id, client_secret)
    try:
        access_token = issuer.issue(credentials, caller=get_client_ip(request), grant_type=grant_type)
    except RateLimitedError as e:
        raise HTTPException(
            status_code=429,
            detail={"error": "rate_limited", "error_description": "Too many token requests"},
            headers={"Retry-After": str(e.retry_after_seconds), **_NO_STORE},
        )
    except UnsupportedGrantTypeError as e:
        raise HTTPException(status_code=400, detail=e.to_detail(), headers=_NO_STORE)
    except InvalidClientError as e:
        raise HTTPException(
            status_code=401,
            detail=e.to_detail(),
            headers={"WWW-Authenticate": 'Basic realm="oauth"', **_NO_STORE},
        )

    return JSONResponse(access_token.to_response(), headers=_NO_STORE)
