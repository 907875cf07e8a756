# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later
#
# Serve an assembled image set to the esp-web-tools install button.

import json
import logging
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_APP_NAME = "ESP Application"
DEFAULT_BROWSER_DELAY = 1.0

ESP_WEB_TOOLS_URL = (
    "https://unpkg.com/esp-web-tools@8.0.2/dist/web/install-button.js?module"
)

LANDING_PAGE = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>ESP Web Flasher</title>
</head>
<body>
    <center>
        <h1>ESP Web Flasher</h1>

        <div id="main" style="display: none;">
            <br>
            <script type="module" src="{ESP_WEB_TOOLS_URL}"></script>
            <esp-web-install-button id="installButton" manifest="manifest.json">
            </esp-web-install-button>
            <br>
            <span><i>NOTE: Make sure to close anything using your device's serial
            port (e.g. a serial monitor)</i></span>
        </div>
        <div id="notSupported" style="display: none;">
            Your browser does not support the Web Serial API. Try Chrome.
        </div>
    </center>

    <script>
        if (navigator.serial) {{
            document.getElementById("notSupported").style.display = "none";
            document.getElementById("main").style.display = "block";
        }} else {{
            document.getElementById("notSupported").style.display = "block";
            document.getElementById("main").style.display = "none";
        }}
    </script>
</body>
</html>
"""

logger = logging.getLogger("espwebflash.server")


def build_manifest(parts, app_name=DEFAULT_APP_NAME, erase=True):
    """Return the esp-web-tools manifest describing the served image set"""
    return {
        "name": app_name,
        "new_install_prompt_erase": erase,
        "builds": [
            {
                "chipFamily": parts.chip_family,
                "parts": [
                    {"path": path, "offset": offset}
                    for path, offset, _ in parts.assets()
                ],
            }
        ],
    }


def manifest_json(parts, app_name=DEFAULT_APP_NAME, erase=True):
    return json.dumps(build_manifest(parts, app_name, erase), indent=2).encode()


class AssetRequestHandler(BaseHTTPRequestHandler):
    """Answers GET and HEAD for the landing page, the manifest and the three
    images. The routes are set up once by AssetServer and never change."""

    server_version = "espwebflash"

    def _find_route(self):
        path = self.path.split("?", 1)[0]
        return self.server.routes.get(path)

    def _send(self, with_body):
        route = self._find_route()
        if route is None:
            logger.debug(f"{self.command} {self.path}: not found")
            self.send_error(404, "Not Found")
            return
        content_type, body = route
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        if with_body:
            self.wfile.write(body)

    def do_GET(self):
        self._send(with_body=True)

    def do_HEAD(self):
        self._send(with_body=False)

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


class AssetServer(ThreadingHTTPServer):
    """HTTP server handling every request in its own thread"""

    daemon_threads = True

    def __init__(
        self,
        parts,
        host=DEFAULT_HOST,
        port=DEFAULT_PORT,
        app_name=DEFAULT_APP_NAME,
        erase=True,
    ):
        self.parts = parts
        routes = {
            "/": ("text/html; charset=utf-8", LANDING_PAGE.encode()),
            "/index.html": ("text/html; charset=utf-8", LANDING_PAGE.encode()),
            "/manifest.json": (
                "application/json",
                manifest_json(parts, app_name, erase),
            ),
        }
        for path, _, data in parts.assets():
            routes[f"/{path}"] = ("application/octet-stream", data)
        self.routes = routes
        super().__init__((host, port), AssetRequestHandler)

    @property
    def url(self):
        host, port = self.server_address[:2]
        return f"http://{host}:{port}/"


def open_browser_later(url, delay=DEFAULT_BROWSER_DELAY):
    """Open the url in a browser after the delay, from a daemon thread"""

    def _open():
        time.sleep(delay)
        try:
            webbrowser.open(url)
        except (webbrowser.Error, OSError) as e:
            logger.debug(f"Could not open a browser: {e}")

    thread = threading.Thread(target=_open, name="open-browser", daemon=True)
    thread.start()
    return thread


def serve(
    parts,
    host=DEFAULT_HOST,
    port=DEFAULT_PORT,
    app_name=DEFAULT_APP_NAME,
    erase=True,
    open_browser=True,
    browser_delay=DEFAULT_BROWSER_DELAY,
):
    """Serve the image set until interrupted with Ctrl-C"""
    server = AssetServer(parts, host, port, app_name, erase)
    logger.info(f"Serving {parts.chip_family} image set at {server.url}")
    logger.info("Type Ctrl-C to quit")
    if open_browser:
        open_browser_later(server.url, browser_delay)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("")  # resetting inline print
        logger.info("Exited with keyboard interrupt")
    finally:
        server.server_close()
    logger.info("--- exit ---")
