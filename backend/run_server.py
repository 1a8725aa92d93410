# run_server.py
import uvicorn
from delivery_locations.main import app

if __name__ == "__main__":
    uvicorn.run(
        app,
        host="127.0.0.1",
        port=3235,
        log_level="info",
    )
