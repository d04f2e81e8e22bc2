"""
Responses issued by the authentication layer itself.

Redirects and rejections are never cacheable. Rejections are generic:
the same page and status for every validation failure.
"""

from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from ..config import Settings
from ..models import ErrorResponse
from .exceptions import OidcError, SessionStoreUnavailable

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def no_store(response: Response) -> Response:
    response.headers.update(NO_STORE_HEADERS)
    return response


def redirect(url: str, status_code: int = 302) -> RedirectResponse:
    return no_store(RedirectResponse(url=url, status_code=status_code))


def json_rejection(status_code: int, error: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=error, message=message)
    return no_store(JSONResponse(status_code=status_code, content=body.model_dump()))


def render_failure_page(
    title: str,
    message: str,
    status_code: int = 401,
    retry_path: str = "/login",
) -> HTMLResponse:
    """
    Render the page shown when a login cannot be completed.

    Args:
        title: Page title
        message: Generic message (no validation detail, no PII)
        status_code: HTTP status code
        retry_path: Where the "Try again" link points
    """
    html_content = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
            display: flex;
            align-items: center;
            justify-content: center;
            min-height: 100vh;
            margin: 0;
            background: #f3f4f6;
        }}
        .container {{
            background: white;
            border-radius: 12px;
            padding: 40px;
            max-width: 480px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
        }}
        h1 {{ color: #1f2937; font-size: 24px; margin-bottom: 16px; }}
        p {{ color: #6b7280; line-height: 1.6; margin-bottom: 32px; }}
        a {{ color: #4f46e5; font-weight: 600; text-decoration: none; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{message}</p>
        <a href="{retry_path}">Try again</a>
    </div>
</body>
</html>
"""
    return no_store(HTMLResponse(content=html_content, status_code=status_code))


def failure_response(exc: OidcError, settings: Settings) -> Response:
    """
    Turn a per-request failure into the client-facing response.

    The exception type only selects between "sign-in failed" and
    "service unavailable"; its reason is never rendered.
    """
    if isinstance(exc, SessionStoreUnavailable):
        return render_failure_page(
            title="Service Unavailable",
            message="Sign-in is temporarily unavailable. Please try again shortly.",
            status_code=503,
            retry_path=settings.LOGIN_PATH,
        )

    if settings.LOGIN_FAILED_PATH:
        return redirect(settings.LOGIN_FAILED_PATH, status_code=303)

    return render_failure_page(
        title="Sign-in Failed",
        message="We could not sign you in. Please try again.",
        status_code=getattr(exc, "status_code", 401),
        retry_path=settings.LOGIN_PATH,
    )
