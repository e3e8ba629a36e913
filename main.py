#!/usr/bin/env python3
"""
Main entry point for the API Proxy when running from a source checkout.
This file allows running the proxy directly from the project root.
"""

import sys
from pathlib import Path

# Add the src directory to Python path
src_dir = Path(__file__).parent / "src"
sys.path.insert(0, str(src_dir))


def main():
    """Run the API Proxy server."""
    import uvicorn
    from api_proxy.core.logging import setup_logging
    from api_proxy.main import create_app

    setup_logging()

    print("Starting API Proxy locally...")
    print("Access at: http://localhost:8000")
    print("Health check: http://localhost:8000/health")
    print("Proxy: http://localhost:8000/proxy?url=<upstream url>")

    uvicorn.run(
        create_app(),
        host="127.0.0.1",
        port=8000,
        log_level="debug",
        reload=False
    )


if __name__ == "__main__":
    main()
