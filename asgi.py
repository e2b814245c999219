"""
asgi.py -- Application assembly for BankDVWA.

This is the ONLY file that joins api/ and web/ into one ASGI app.
api/main.py knows nothing about web/ routes or templates.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import handle_http_error, handle_security_error
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
# Gate denials and HTTP errors on non-/api paths become redirects and error pages.
app.state.web_error_handler = handle_security_error
app.state.web_http_error_handler = handle_http_error
