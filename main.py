"""
Chip Maturer - Web Server Entry Point
=====================================

Run this to start the API:
    python main.py

Then open http://127.0.0.1:8000/docs in your browser.

Configure the gateway and the model through .env:
    EVOLUTION_API_ENDPOINT, EVOLUTION_API_KEY, OPENAI_API_KEY
"""

import os

import uvicorn


def main():
    """Start the web server."""
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))

    print("\n" + "=" * 50)
    print("   Chip Maturer - Maturation Engine API")
    print("=" * 50)
    print(f"\n   Starting server at http://{host}:{port}")
    print("   Press Ctrl+C to stop\n")

    # A single worker: the scheduler keeps its timers in process memory
    uvicorn.run(
        "chipmaturer.web.app:app",
        host=host,
        port=port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
