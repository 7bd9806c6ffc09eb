import asyncio
import itertools
from typing import Any, Optional

from aiohttp import web
from loguru import logger

VALID_TOKEN = "<valid>"
HELLO_WORLD_VERSION = "5c7d5dc6dd8bf75c1acaa8565735e7986bc5b66206b55cca93cb72c9bf15ccaa"
CREATED_AT = "2022-04-26T22:13:06.224088Z"
COMPLETED_AT = "2023-11-27T13:35:45.99397566Z"


class InferenceServer:
    """
    In-process fake of the inference API.

    Every GET of a job reports `processing` for the first `processing_polls`
    fetches, then the terminal status. Predictions greet the `text` input;
    with `fail_jobs` set they fail instead.
    """

    def __init__(
        self,
        processing_polls: int = 1,
        fail_jobs: bool = False,
        response_delay: float = 0.0,
        page_size: int = 2,
    ):
        self.processing_polls = processing_polls
        self.fail_jobs = fail_jobs
        self.response_delay = response_delay
        self.page_size = page_size
        self.jobs: dict[str, dict[str, Any]] = {}
        self.polls: dict[str, int] = {}
        self.models: list[dict[str, Any]] = [self._model("replicate", "hello-world")]
        self.model_bodies: list[dict[str, Any]] = []
        self.requests: list[tuple[str, str]] = []
        self.runner: Optional[web.AppRunner] = None
        self._ids = itertools.count(1)
        self.logger = logger

        self.app = web.Application(middlewares=[self._authenticate])
        self.app.router.add_post("/v1/predictions", self.handle_create_prediction)
        self.app.router.add_post(
            "/v1/models/{owner}/{name}/predictions", self.handle_create_prediction
        )
        self.app.router.add_post(
            "/v1/deployments/{owner}/{name}/predictions", self.handle_create_prediction
        )
        self.app.router.add_get("/v1/predictions", self.handle_list_jobs)
        self.app.router.add_get("/v1/predictions/{id}", self.handle_get_job)
        self.app.router.add_post("/v1/predictions/{id}/cancel", self.handle_cancel_job)
        self.app.router.add_post(
            "/v1/models/{owner}/{name}/versions/{version}/trainings",
            self.handle_create_training,
        )
        self.app.router.add_get("/v1/trainings", self.handle_list_jobs)
        self.app.router.add_get("/v1/trainings/{id}", self.handle_get_job)
        self.app.router.add_post("/v1/trainings/{id}/cancel", self.handle_cancel_job)
        self.app.router.add_get("/v1/account", self.handle_account)
        self.app.router.add_get("/v1/hardware", self.handle_hardware)
        self.app.router.add_get("/v1/models", self.handle_list_models)
        self.app.router.add_post("/v1/models", self.handle_create_model)
        self.app.router.add_get("/v1/models/{owner}/{name}", self.handle_model)
        self.app.router.add_get("/v1/models/{owner}/{name}/versions", self.handle_model_versions)
        self.app.router.add_get(
            "/v1/models/{owner}/{name}/versions/{version}", self.handle_model_version
        )
        self.app.router.add_get("/v1/collections", self.handle_list_collections)
        self.app.router.add_get("/v1/collections/{slug}", self.handle_collection)

    @web.middleware
    async def _authenticate(self, request: web.Request, handler):
        self.requests.append((request.method, request.path))
        if request.headers.get("Authorization") != f"Bearer {VALID_TOKEN}":
            self.logger.info("Rejecting unauthenticated request")
            return web.json_response({"detail": "Invalid token."}, status=401)
        if self.response_delay:
            await asyncio.sleep(self.response_delay)
        return await handler(request)

    def _new_job(self, kind: str, body: dict[str, Any], **fields: Any) -> dict[str, Any]:
        job_id = f"{kind}-{next(self._ids)}"
        collection = "predictions" if kind == "prediction" else "trainings"
        job = {
            "id": job_id,
            "version": body.get("version", HELLO_WORLD_VERSION),
            "urls": {
                "get": f"/v1/{collection}/{job_id}",
                "cancel": f"/v1/{collection}/{job_id}/cancel",
            },
            "created_at": CREATED_AT,
            "source": "api",
            "status": "starting",
            "input": body.get("input", {}),
            "output": None,
            "error": None,
            "logs": None,
            "metrics": {},
            **fields,
        }
        self.jobs[job_id] = job
        self.polls[job_id] = 0
        return job

    async def handle_create_prediction(self, request: web.Request) -> web.Response:
        body = await request.json()
        if body.get("version") == "invalid":
            return web.json_response({"detail": "Invalid version"}, status=400)

        owner, name = request.match_info.get("owner"), request.match_info.get("name")
        model = f"{owner}/{name}" if owner else "replicate/hello-world"
        job = self._new_job("prediction", body, model=model)
        self.logger.info(f"Created prediction {job['id']}")
        return web.json_response(job, status=201)

    async def handle_create_training(self, request: web.Request) -> web.Response:
        body = await request.json()
        job = self._new_job(
            "training", {**body, "version": request.match_info["version"]}
        )
        self.logger.info(f"Created training {job['id']} for {body.get('destination')}")
        return web.json_response(job, status=201)

    async def handle_get_job(self, request: web.Request) -> web.Response:
        job = self.jobs.get(request.match_info["id"])
        if job is None:
            return web.json_response({"detail": "Not found."}, status=404)

        if job["status"] in ("starting", "processing"):
            self.polls[job["id"]] += 1
            if self.polls[job["id"]] <= self.processing_polls:
                job.update(status="processing", logs="running\n")
            else:
                self._finish(job)

        self.logger.info(f"Returning {job['status']} status for {job['id']}")
        return web.json_response(job)

    def _finish(self, job: dict[str, Any]) -> None:
        job["completed_at"] = COMPLETED_AT
        if self.fail_jobs:
            job.update(status="failed", error="CUDA out of memory")
        elif job["id"].startswith("training"):
            job.update(
                status="succeeded",
                output={"version": "b0a8b3f1", "weights": "https://example.com/weights.tar"},
            )
        else:
            text = job["input"].get("text", "World")
            job.update(status="succeeded", output=[f"Hello, {text}!"], metrics={"predict_time": 10.0})

    async def handle_cancel_job(self, request: web.Request) -> web.Response:
        job = self.jobs.get(request.match_info["id"])
        if job is None:
            return web.json_response({"detail": "Not found."}, status=404)
        if job["status"] in ("starting", "processing"):
            job.update(status="canceled", completed_at=COMPLETED_AT)
        return web.json_response(job)

    async def handle_list_jobs(self, request: web.Request) -> web.Response:
        kind = "prediction" if request.path.endswith("predictions") else "training"
        jobs = [job for job in self.jobs.values() if job["id"].startswith(kind)]
        return web.json_response(self._page(request, jobs))

    def _page(self, request: web.Request, items: list[Any]) -> dict[str, Any]:
        offset = int(request.query.get("cursor", 0))
        end = offset + self.page_size

        def link(position: int) -> str:
            return str(request.url.with_query({"cursor": str(position)}))

        return {
            "previous": link(max(offset - self.page_size, 0)) if offset else None,
            "next": link(end) if end < len(items) else None,
            "results": items[offset:end],
        }

    async def handle_account(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "type": "organization",
                "username": "replicate",
                "name": "Replicate",
                "github_url": "https://github.com/replicate",
            }
        )

    async def handle_hardware(self, request: web.Request) -> web.Response:
        return web.json_response(
            [
                {"sku": "cpu", "name": "CPU"},
                {"sku": "gpu-a40-large", "name": "Nvidia A40 (Large) GPU"},
            ]
        )

    def _version(self, version_id: str) -> dict[str, Any]:
        return {
            "id": version_id,
            "created_at": CREATED_AT,
            "openapi_schema": {"openapi": "3.0.2", "info": {"title": "Cog"}},
        }

    def _model(self, owner: str, name: str) -> dict[str, Any]:
        return {
            "owner": owner,
            "name": name,
            "url": f"https://replicate.com/{owner}/{name}",
            "description": "A tiny model that says hello",
            "visibility": "public",
            "latest_version": self._version(HELLO_WORLD_VERSION),
        }

    async def handle_list_models(self, request: web.Request) -> web.Response:
        return web.json_response(self._page(request, self.models))

    async def handle_create_model(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.model_bodies.append(body)
        model = {
            "owner": body["owner"],
            "name": body["name"],
            "url": f"https://replicate.com/{body['owner']}/{body['name']}",
            "description": body.get("description"),
            "github_url": body.get("github_url"),
            "visibility": body["visibility"],
            "latest_version": None,
        }
        self.models.append(model)
        self.logger.info(f"Created model {body['owner']}/{body['name']}")
        return web.json_response(model, status=201)

    async def handle_model(self, request: web.Request) -> web.Response:
        return web.json_response(
            self._model(request.match_info["owner"], request.match_info["name"])
        )

    async def handle_model_versions(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "previous": None,
                "next": None,
                "results": [self._version(HELLO_WORLD_VERSION), self._version("e2e8c39e")],
            }
        )

    async def handle_model_version(self, request: web.Request) -> web.Response:
        return web.json_response(self._version(request.match_info["version"]))

    async def handle_list_collections(self, request: web.Request) -> web.Response:
        collections = [
            {"name": "Super resolution", "slug": "super-resolution", "description": "Upscaling models"},
            {"name": "Image to text", "slug": "image-to-text", "description": "Captioning models"},
            {"name": "Text to speech", "slug": "text-to-speech", "description": "Voice models"},
        ]
        return web.json_response(self._page(request, collections))

    async def handle_collection(self, request: web.Request) -> web.Response:
        slug = request.match_info["slug"]
        return web.json_response(
            {
                "name": "Super resolution",
                "slug": slug,
                "description": "Upscaling models",
                "models": [self._model("replicate", "hello-world")],
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
