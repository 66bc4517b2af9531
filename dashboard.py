# dashboard.py
import asyncio
import html
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from config import Settings, setup_logging
from errors import ExecutionError, NotFoundError, StoreError, ValidationError
from models import JobStatus
from notifier import Lagged, StatusNotifier
from service import JobService
from storage import Storage
from worker import Runner

logger = logging.getLogger(__name__)

_EXCEPTION_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ExecutionError: 500,
    StoreError: 503,
}


class SubmitRequest(BaseModel):
    name: Optional[str] = None
    command: Optional[str] = None
    output: Optional[str] = None


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  a { color: #1976D2; }
  .muted { color: #555; }
"""

# Reloads the page whenever the runner reports a status change
LIVE_SCRIPT = """
  <script>
    new EventSource('/events').addEventListener('status', () => location.reload());
  </script>
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="container">
        {body_html}
      </div>
      {LIVE_SCRIPT}
    </body>
    </html>
    """


def _make_handler(status_code: int):
    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    return _handler


def register_error_handlers(app: FastAPI) -> None:
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, start_runner: bool = True) -> FastAPI:
    """Build the API app; the runner thread lives as long as the app."""
    settings = settings or Settings()
    storage = Storage(settings.db_path)
    notifier = StatusNotifier(settings.subscriber_capacity)
    runner = Runner(storage, notifier, settings)
    service = JobService(storage, settings, runner=runner, notifier=notifier)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        if start_runner:
            runner.start()
        yield
        logger.info("Shutting down, waiting for the runner to finish its iteration")
        if start_runner:
            await asyncio.to_thread(runner.stop)
        storage.close()

    app = FastAPI(title="buildq", lifespan=_lifespan)
    app.state.settings = settings
    app.state.service = service
    app.state.runner = runner
    app.state.notifier = notifier
    register_error_handlers(app)

    # ---------- JSON API ----------
    @app.post("/run")
    def submit(body: SubmitRequest):
        return service.submit(body.name, body.command, body.output)

    @app.get("/list/{page_no}")
    def list_jobs(page_no: int):
        jobs, pages = service.list(page_no)
        return [jobs, pages]

    @app.get("/jobs/{job_id}")
    def get_job(job_id: int):
        return service.get(job_id)

    @app.post("/cancel/{job_id}")
    def cancel(job_id: int):
        return service.cancel(job_id)

    @app.post("/reset/{job_id}")
    def reset(job_id: int):
        return service.reset(job_id)

    @app.get("/available")
    def available():
        return list(service.available_recipes())

    # ---------- Files ----------
    @app.get("/logs/{job_id}")
    def download_log(job_id: int):
        return FileResponse(service.log_file(job_id), media_type="text/plain")

    @app.get("/output/{job_id}")
    def download_output(job_id: int):
        path = service.artifact_file(job_id)
        return FileResponse(path, filename=path.name)

    # ---------- Status stream ----------
    @app.get("/events")
    async def events(request: Request):
        async def _generate():
            with notifier.subscribe() as sub:
                while not await request.is_disconnected():
                    try:
                        event = await asyncio.to_thread(sub.get, 1.0)
                    except Lagged as e:
                        yield {"event": "lagged", "data": str(e.missed)}
                        continue
                    if event is not None:
                        yield {"event": "status", "id": str(event.id), "data": event.status.value}

        return EventSourceResponse(_generate())

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home(page_no: int = 1):
        jobs, pages = service.list(page_no)
        table_html = """
        <h2>Jobs</h2>
        <table>
          <tr><th>ID</th><th>Name</th><th>Command</th><th>Status</th><th>Created</th><th>Log</th><th>Output</th></tr>
        """
        for job in jobs:
            artifact = "-"
            if job.output and job.status is JobStatus.success:
                artifact = f"<a href='/output/{job.id}'>{html.escape(job.output)}</a>"
            table_html += (
                f"<tr><td>{job.id}</td><td>{html.escape(job.name)}</td><td>{html.escape(job.command)}</td>"
                f"<td>{job.status.emoji} {job.status.value}</td><td>{job.created_at:%Y-%m-%d %H:%M:%S}</td>"
                f"<td><a href='/logs/{job.id}'>log</a></td><td>{artifact}</td></tr>"
            )
        table_html += "</table>"
        if not jobs:
            table_html += "<p class='muted'>No jobs yet.</p>"
        nav = " ".join(
            f"<a href='/?page_no={n}'>{n}</a>" if n != page_no else f"<b>{n}</b>" for n in range(1, pages + 1)
        )
        return page("🏗️ Build Queue", table_html + f"<p>{nav}</p>")

    return app


def run_server(settings: Optional[Settings] = None) -> None:
    import uvicorn

    settings = settings or Settings()
    setup_logging(settings.log_level)
    logger.info("Listening on %s:%s, work directory %s", settings.host, settings.port, settings.work_dir)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
