def main():
    import uvicorn

    from workerbox.api import API
    from workerbox.utils import get_settings

    settings = get_settings()
    uvicorn.run(API, host=settings.host, port=settings.port)
