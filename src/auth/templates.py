"""HTML templates for the authorization bridge.

Every value interpolated into these templates must be HTML-escaped by the
caller (see `render_approval_page`).
"""

import html

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #F3F2F1;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 8px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 460px; border: 1px solid #E1DFDD; }}
        h1 {{ margin: 0 0 8px; color: #201F1E; font-size: 22px; font-weight: 600; }}
        p {{ color: #605E5C; margin: 0 0 20px; }}
        .info {{ background: #F3F2F1; color: #323130; padding: 12px; border-radius: 6px; margin-bottom: 20px;
                font-size: 14px; word-break: break-all; }}
        .info dt {{ font-weight: 600; margin-top: 8px; }}
        .info dd {{ margin: 0; }}
        .buttons {{ display: flex; gap: 12px; }}
        button {{ flex: 1; padding: 12px; border-radius: 6px; font-size: 15px; font-weight: 600; cursor: pointer; }}
        .approve {{ background: #0078D4; color: white; border: none; }}
        .approve:hover {{ background: #106EBE; }}
        .deny {{ background: white; color: #323130; border: 1px solid #8A8886; }}
        .error {{ background: #FDE7E9; color: #A4262C; padding: 12px; border-radius: 6px; border: 1px solid #F1BBBC; }}
"""

APPROVAL_PAGE = (
    """
<!DOCTYPE html>
<html>
<head>
    <title>Authorize - {server_name}</title>
    <style>"""
    + _STYLE
    + """    </style>
</head>
<body>
    <div class="container">
        <h1>{client_name} wants access</h1>
        <p>This client will be able to use your Microsoft 365 account through {server_name}.
           You will sign in with Microsoft next.</p>
        <dl class="info">
            <dt>Client</dt><dd>{client_name}</dd>
            <dt>Redirect URI</dt><dd>{redirect_uri}</dd>
            <dt>Scopes</dt><dd>{scopes}</dd>
        </dl>
        <form method="POST" action="{action}">
            <input type="hidden" name="state" value="{state}">
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Deny</button>
                <button type="submit" name="action" value="approve" class="approve">Approve</button>
            </div>
        </form>
    </div>
</body>
</html>
"""
)

ERROR_PAGE = (
    """
<!DOCTYPE html>
<html>
<head>
    <title>Authorization failed - {server_name}</title>
    <style>"""
    + _STYLE
    + """    </style>
</head>
<body>
    <div class="container">
        <h1>Authorization failed</h1>
        <div class="error">{message}</div>
    </div>
</body>
</html>
"""
)


def render_approval_page(
    *,
    server_name: str,
    client_name: str,
    redirect_uri: str,
    scopes: list[str],
    action: str,
    state: str,
) -> str:
    return APPROVAL_PAGE.format(
        server_name=html.escape(server_name),
        client_name=html.escape(client_name),
        redirect_uri=html.escape(redirect_uri),
        scopes=html.escape(" ".join(scopes) or "(default)"),
        action=html.escape(action),
        state=html.escape(state),
    )


def render_error_page(*, server_name: str, message: str) -> str:
    return ERROR_PAGE.format(
        server_name=html.escape(server_name), message=html.escape(message)
    )
