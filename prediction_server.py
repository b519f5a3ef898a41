import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from aiohttp import web
from loguru import logger


class PredictionServer:
    """Local stand-in for the WaveSpeed prediction API.

    Jobs report `processing` for `processing_polls` result fetches and then turn
    `completed`, or `failed` with `fail_with` as the error. `fail_count` limits how
    many submitted jobs fail (None means all of them). The `*_failures` lists hold
    HTTP statuses, or (status, raw body) pairs, returned and consumed before a
    route behaves normally. `null_outputs` sends JSON null for the list fields.
    """

    def __init__(
        self,
        api_key: str = "test-key",
        processing_polls: int = 0,
        outputs: Optional[list[str]] = None,
        fail_with: Optional[str] = None,
        fail_count: Optional[int] = None,
        response_delay: float = 0.0,
    ):
        self.api_key = api_key
        self.processing_polls = processing_polls
        self.outputs = outputs if outputs is not None else ["https://example.com/out.png"]
        self.fail_with = fail_with
        self.fail_count = fail_count
        self.response_delay = response_delay
        self.null_outputs = False
        self.submit_failures: list[Union[int, tuple[int, bytes]]] = []
        self.result_failures: list[Union[int, tuple[int, bytes]]] = []
        self.upload_failures: list[Union[int, tuple[int, bytes]]] = []
        self.submit_response: Optional[dict] = None
        self.upload_response: Optional[dict] = None
        self.requests: list[tuple[str, str]] = []
        self.submissions: list[dict] = []
        self.uploads: list[tuple[str, bytes]] = []
        self.jobs: dict[str, dict] = {}
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application(middlewares=[self.record_request])
        self.app.router.add_post("/api/v3/media/upload/binary", self.handle_upload)
        self.app.router.add_get("/api/v3/predictions/{task_id}/result", self.handle_result)
        self.app.router.add_post("/api/v3/{model:.+}", self.handle_submit)
        self.logger = logger

    def count(self, method: str, fragment: str = "") -> int:
        return sum(1 for m, path in self.requests if m == method and fragment in path)

    @web.middleware
    async def record_request(self, request, handler):
        self.requests.append((request.method, request.path))
        if request.headers.get("Authorization") != f"Bearer {self.api_key}":
            return web.json_response({"code": 401, "message": "Unauthorized"}, status=401)
        if self.response_delay:
            await asyncio.sleep(self.response_delay)
        return await handler(request)

    def _scripted_failure(self, failures: list, route: str) -> Optional[web.Response]:
        if not failures:
            return None
        failure = failures.pop(0)
        if isinstance(failure, tuple):
            status, body = failure
            self.logger.info(f"Returning scripted {status} with raw body for {route}")
            return web.Response(status=status, body=body, content_type="text/html")
        self.logger.info(f"Returning scripted {failure} for {route}")
        return web.Response(status=failure, text=f"Scripted error {failure}")

    def _next_job_error(self) -> Optional[str]:
        if not self.fail_with:
            return None
        if self.fail_count is not None and len(self.submissions) > self.fail_count:
            return None
        return self.fail_with

    def _job_data(self, task_id: str, job: dict, status: str) -> dict:
        data = {
            "id": task_id,
            "model": job["model"],
            "status": status,
            "outputs": [],
            "created_at": job["created_at"],
        }
        if status == "completed":
            data["outputs"] = list(job["outputs"])
            data["executionTime"] = 1234
        elif status == "failed":
            data["error"] = job["error"]
        if self.null_outputs:
            data["outputs"] = None
            data["has_nsfw_contents"] = None
        return data

    async def handle_submit(self, request):
        failure = self._scripted_failure(self.submit_failures, "submit")
        if failure is not None:
            return failure

        body = await request.json()
        self.submissions.append(body)
        if self.submit_response is not None:
            return web.json_response(self.submit_response)

        task_id = uuid.uuid4().hex
        job = {
            "model": request.match_info["model"],
            "outputs": list(self.outputs),
            "error": self._next_job_error(),
            "polls": 0,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        if body.get("enable_sync_mode"):
            status = "failed" if job["error"] else "completed"
            self.logger.info(f"Returning sync {status} result for {task_id}")
            return web.json_response(
                {"code": 200, "message": "success", "data": self._job_data(task_id, job, status)}
            )

        self.jobs[task_id] = job
        self.logger.info(f"Created prediction {task_id} for {job['model']}")
        return web.json_response(
            {"code": 200, "message": "success", "data": self._job_data(task_id, job, "created")}
        )

    async def handle_result(self, request):
        failure = self._scripted_failure(self.result_failures, "result")
        if failure is not None:
            return failure

        task_id = request.match_info["task_id"]
        job = self.jobs.get(task_id)
        if job is None:
            return web.json_response({"code": 404, "message": "Not found"}, status=404)

        job["polls"] += 1
        if job["polls"] <= self.processing_polls:
            status = "processing"
        elif job["error"]:
            status = "failed"
        else:
            status = "completed"

        self.logger.info(f"Returning {status} status for {task_id} (poll {job['polls']})")
        return web.json_response(
            {"code": 200, "message": "success", "data": self._job_data(task_id, job, status)}
        )

    async def handle_upload(self, request):
        failure = self._scripted_failure(self.upload_failures, "upload")
        if failure is not None:
            return failure

        reader = await request.multipart()
        field = await reader.next()
        if field is None or field.name != "file":
            return web.json_response({"code": 400, "message": "file field is required"}, status=400)

        content = await field.read()
        self.uploads.append((field.filename, bytes(content)))

        if self.upload_response is not None:
            return web.json_response(self.upload_response)

        return web.json_response(
            {
                "code": 200,
                "message": "success",
                "data": {
                    "type": "image",
                    "download_url": f"https://cdn.example.com/uploads/{field.filename}",
                    "filename": field.filename,
                    "size": len(content),
                },
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
