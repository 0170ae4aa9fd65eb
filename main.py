import uvicorn

from remote_subs.settings import settings

if __name__ == "__main__":
    uvicorn.run("remote_subs.app:app", host="0.0.0.0", port=settings.port)
