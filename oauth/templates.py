"""HTML templates for the OAuth consent flow.

Every value interpolated into these templates must go through ``escape()``;
``render_consent_page`` and ``render_error_page`` do that for their callers.
"""

from html import escape as _html_escape

from oauth.models import AuthorizationRequest

CONSENT_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'; form-action 'self'",
    "X-Frame-Options": "DENY",
}

_STYLE = """
        * {{ box-sizing: border-box; margin: 0; padding: 0; }}
        body {{ font-family: 'Inter', -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #0a0a0f; color: #e8e8ed;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; }}
        .card {{ background: #12121a; border: 1px solid #2a2a3a; border-radius: 16px;
                padding: 2.5rem; max-width: 420px; width: 90%; text-align: center; }}
        h1 {{ font-size: 2rem; font-weight: 800; letter-spacing: -1px; margin-bottom: .25rem; }}
        h1 .dot {{ color: #6366f1; }}
        .desc {{ color: #8888a0; font-size: .95rem; margin: .75rem 0 1.5rem; }}
        .client {{ color: #e8e8ed; font-weight: 600; }}
        .tools {{ text-align: left; background: #0a0a0f; border: 1px solid #2a2a3a; border-radius: 8px;
                 padding: 1rem; margin-bottom: 1.5rem; }}
        .tools h3 {{ font-size: .8rem; text-transform: uppercase; letter-spacing: 1px; color: #55556a; margin-bottom: .5rem; }}
        .tools li {{ color: #8888a0; font-size: .85rem; padding: .2rem 0; list-style: none; }}
        .tools li::before {{ content: '\\2713'; color: #22c55e; margin-right: .5rem; }}
        .redirect {{ color: #55556a; font-size: .75rem; word-break: break-all; margin-bottom: 1.5rem; }}
        form {{ display: flex; gap: .75rem; justify-content: center; }}
        button {{ padding: .75rem 2rem; border: none; border-radius: 10px; font-size: 1rem;
                 font-weight: 600; cursor: pointer; font-family: inherit; }}
        .allow {{ background: #6366f1; color: #fff; }}
        .allow:hover {{ background: #4f46e5; }}
        .deny {{ background: transparent; border: 1px solid #2a2a3a; color: #8888a0; }}
        .deny:hover {{ border-color: #ef4444; color: #ef4444; }}
        .error {{ color: #ef4444; margin-top: 1rem; }}
"""

CONSENT_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Authorize - mcp.vin</title>
    <style>""" + _STYLE + """    </style>
</head>
<body>
    <div class="card">
        <h1>mcp<span class="dot">.</span>vin</h1>
        <p class="desc"><span class="client">{client_name}</span> wants to access the VIN decoder tools.</p>
        <div class="tools">
            <h3>Permissions ({scope})</h3>
            <ul>
                <li>Decode vehicle VINs</li>
                <li>Read vehicle, engine and assembly plant details</li>
            </ul>
        </div>
        <p class="redirect">You will be redirected to {redirect_uri}</p>
        <form method="POST" action="/oauth/approve">
            <input type="hidden" name="csrf" value="{csrf}">
            <input type="hidden" name="client_id" value="{client_id}">
            <input type="hidden" name="redirect_uri" value="{redirect_uri}">
            <input type="hidden" name="state" value="{state}">
            <input type="hidden" name="code_challenge" value="{code_challenge}">
            <input type="hidden" name="code_challenge_method" value="{code_challenge_method}">
            <input type="hidden" name="scope" value="{scope}">
            <button type="submit" name="action" value="deny" class="deny">Deny</button>
            <button type="submit" name="action" value="allow" class="allow">Allow</button>
        </form>
    </div>
</body>
</html>
"""

ERROR_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Authorization error - mcp.vin</title>
    <style>""" + _STYLE + """    </style>
</head>
<body>
    <div class="card">
        <h1>mcp<span class="dot">.</span>vin</h1>
        <p class="error">{message}</p>
    </div>
</body>
</html>
"""


def escape(value) -> str:
    """HTML-escape a value for element content and quoted attributes."""
    return _html_escape("" if value is None else str(value), quote=True)


def render_consent_page(request: AuthorizationRequest, csrf: str, client_name: str) -> str:
    return CONSENT_PAGE.format(
        csrf=escape(csrf),
        client_name=escape(client_name),
        client_id=escape(request.client_id),
        redirect_uri=escape(request.redirect_uri),
        state=escape(request.state),
        code_challenge=escape(request.code_challenge),
        code_challenge_method=escape(request.code_challenge_method),
        scope=escape(request.scope),
    )


def render_error_page(message: str) -> str:
    return ERROR_PAGE.format(message=escape(message))
