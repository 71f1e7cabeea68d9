"""Scaffold and dev-server bootstrap run on every freshly provisioned sandbox."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

from appbuilder.config import PORT_POLL_ATTEMPTS, PORT_POLL_INTERVAL_SECONDS
from appbuilder.sandbox.backend import SandboxSession


logger = logging.getLogger("appbuilder.sandbox.bootstrap")


Sleep = Callable[[float], Awaitable[None]]


class BootstrapError(Exception):
    pass


BASE_DEPENDENCIES: dict[str, str] = {
    "react": "^18.2.0",
    "react-dom": "^18.2.0",
}

BASE_DEV_DEPENDENCIES: dict[str, str] = {
    "@vitejs/plugin-react": "^4.2.1",
    "autoprefixer": "^10.4.16",
    "postcss": "^8.4.32",
    "tailwindcss": "^3.3.6",
    "vite": "^5.0.8",
}


def scaffold_files(port: int) -> dict[str, str]:
    """Minimal runnable Vite + React + Tailwind app."""
    package_json = {
        "name": "generated-app",
        "private": True,
        "version": "0.0.0",
        "type": "module",
        "scripts": {"dev": "vite", "build": "vite build", "preview": "vite preview"},
        "dependencies": BASE_DEPENDENCIES,
        "devDependencies": BASE_DEV_DEPENDENCIES,
    }
    return {
        "package.json": json.dumps(package_json, indent=2),
        "index.html": (
            "<!doctype html>\n"
            '<html lang="en">\n'
            "  <head>\n"
            '    <meta charset="UTF-8" />\n'
            '    <meta name="viewport" content="width=device-width, initial-scale=1.0" />\n'
            "    <title>Generated App</title>\n"
            "  </head>\n"
            "  <body>\n"
            '    <div id="root"></div>\n'
            '    <script type="module" src="/src/main.jsx"></script>\n'
            "  </body>\n"
            "</html>\n"
        ),
        "vite.config.js": (
            "import { defineConfig } from 'vite'\n"
            "import react from '@vitejs/plugin-react'\n\n"
            "export default defineConfig({\n"
            "  plugins: [react()],\n"
            f"  server: {{ host: '0.0.0.0', port: {port}, strictPort: true, allowedHosts: true }}\n"
            "})\n"
        ),
        "tailwind.config.js": (
            "export default {\n"
            "  content: ['./index.html', './src/**/*.{js,ts,jsx,tsx}'],\n"
            "  theme: { extend: {} },\n"
            "  plugins: [],\n"
            "}\n"
        ),
        "postcss.config.js": (
            "export default {\n  plugins: { tailwindcss: {}, autoprefixer: {} },\n}\n"
        ),
        "src/main.jsx": (
            "import React from 'react'\n"
            "import ReactDOM from 'react-dom/client'\n"
            "import App from './App.jsx'\n"
            "import './index.css'\n\n"
            "ReactDOM.createRoot(document.getElementById('root')).render(\n"
            "  <React.StrictMode>\n    <App />\n  </React.StrictMode>,\n)\n"
        ),
        "src/App.jsx": (
            "function App() {\n"
            "  return (\n"
            '    <div className="min-h-screen flex items-center justify-center">\n'
            '      <p className="text-gray-600">Your app will appear here.</p>\n'
            "    </div>\n"
            "  )\n"
            "}\n\n"
            "export default App\n"
        ),
        "src/index.css": "@tailwind base;\n@tailwind components;\n@tailwind utilities;\n",
    }


def dev_server_command(port: int) -> str:
    return (
        "pkill -f vite >/dev/null 2>&1 || true; "
        f"FORCE_COLOR=0 nohup npm run dev -- --host 0.0.0.0 --port {port} "
        "> /tmp/vite.log 2>&1 &"
    )


def port_check_command(port: int) -> str:
    return (
        f"(ss -ltn 2>/dev/null || netstat -tln 2>/dev/null) | grep -q ':{port} '"
    )


PROCESS_CHECK_COMMAND = "pgrep -f vite >/dev/null"


async def wait_for_port(session: SandboxSession, port: int, sleep: Sleep = asyncio.sleep) -> bool:
    """Poll for the dev server port, restarting the server if its process died."""
    for attempt in range(1, PORT_POLL_ATTEMPTS + 1):
        await sleep(PORT_POLL_INTERVAL_SECONDS)
        check = await session.run(port_check_command(port))
        if check.ok:
            logger.info("preview port %d listening (poll %d)", port, attempt)
            return True
        alive = await session.run(PROCESS_CHECK_COMMAND)
        if not alive.ok:
            logger.warning("dev server process died, restarting (poll %d)", attempt)
            await session.run(dev_server_command(port))
    return False


async def bootstrap(session: SandboxSession, port: int, sleep: Sleep = asyncio.sleep) -> list[str]:
    """Write the scaffold, install base dependencies and start the preview server.

    Returns the scaffold paths, which now exist on the sandbox. Raises
    BootstrapError when the sandbox is unusable.
    """
    connectivity = await session.run("echo ready")
    if not connectivity.ok:
        raise BootstrapError(f"sandbox connectivity test failed: {connectivity.stderr}")

    files = scaffold_files(port)
    await session.write_files(list(files.items()))
    logger.info("scaffold written to %s (%d files)", session.sandbox_id, len(files))

    install = await session.run("npm install --no-audit --no-fund --loglevel error")
    if not install.ok:
        raise BootstrapError(
            f"base dependency install failed (exit {install.exit_code}): {install.stderr[-500:]}"
        )

    await session.run(dev_server_command(port))
    if not await wait_for_port(session, port, sleep):
        # The preview can still come up later; the check-preview endpoint restarts it.
        logger.warning("preview port %d not confirmed after %d polls", port, PORT_POLL_ATTEMPTS)
    return list(files.keys())
