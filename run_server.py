import uvicorn

from n8n_monitor import config

if __name__ == "__main__":
    uvicorn.run(
        "n8n_monitor.main:app",
        host=config.HOST,
        port=config.PORT,
        log_level="info",
    )
