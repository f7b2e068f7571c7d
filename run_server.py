import os

import uvicorn

if __name__ == "__main__":
    host = os.environ.get("MOMENTS_HOST", "0.0.0.0")
    port = int(os.environ.get("MOMENTS_PORT", "8000"))

    print("Starting Moments Intelligence API Server...")
    print(f"Docs available at: http://localhost:{port}/docs")

    uvicorn.run(
        "moments.api.server:app",
        host=host,
        port=port,
        reload=os.environ.get("MOMENTS_RELOAD") == "1",
    )
