"""Backend launcher that sets the Windows event loop policy before uvicorn starts."""
import asyncio
import os
import sys

if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import uvicorn


def main() -> None:
    port = int(os.environ.get("POETALK_PORT", "8765"))
    uvicorn.run("poetalk.main:app", host="127.0.0.1", port=port)


if __name__ == "__main__":
    main()
