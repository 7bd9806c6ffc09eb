import json
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar, Union

import aiohttp
from loguru import logger
from pydantic import BaseModel

from replicate_client.config import ClientSettings
from replicate_client.exceptions import APIError, JobFailed
from replicate_client.models import (
    Account,
    AnyPrediction,
    AnyTraining,
    Hardware,
    Identifier,
    Job,
    Model,
    ModelCollection,
    ModelVersion,
    Page,
    Prediction,
    Status,
    Training,
    Visibility,
    Webhook,
)
from replicate_client.polling import ProgressCallback, wait_for_job
from replicate_client.retry import RetryPolicy
from replicate_client.value import Value

ResponseT = TypeVar("ResponseT", bound=BaseModel)
JobT = TypeVar("JobT", bound=Job)


class Client:
    """
    Async client for the Replicate HTTP API.

    The underlying `aiohttp.ClientSession` is created on first use and closed
    by `close()` or on leaving `async with`. A session passed in by the caller
    is shared and left open.
    """

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
        settings: Optional[ClientSettings] = None,
    ):
        settings = settings or ClientSettings()
        base_url = base_url or settings.base_url
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.user_agent = user_agent or settings.user_agent
        self.retry_policy = retry_policy or RetryPolicy.default()
        self.logger = logger
        self._token = api_token if api_token is not None else settings.api_token
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # Predictions

    async def run(
        self,
        identifier: Union[Identifier, str],
        input: Any,
        webhook: Optional[Webhook] = None,
        output_type: Any = Value,
        policy: Optional[RetryPolicy] = None,
    ) -> Optional[Any]:
        """Runs a model, waits for the prediction to finish and returns its output"""
        if isinstance(identifier, str):
            identifier = Identifier.parse(identifier)

        prediction_type = Prediction[Value, output_type]
        if identifier.version is not None:
            prediction = await self.create_prediction(
                input, version=identifier.version, webhook=webhook, prediction_type=prediction_type
            )
        else:
            prediction = await self.create_prediction(
                input, model=identifier.model_id, webhook=webhook, prediction_type=prediction_type
            )

        prediction = await self.wait(prediction, policy=policy)

        if prediction.status == Status.failed:
            raise JobFailed(prediction)
        return prediction.output

    async def create_prediction(
        self,
        input: Any,
        *,
        version: Optional[str] = None,
        model: Optional[str] = None,
        deployment: Optional[str] = None,
        webhook: Optional[Webhook] = None,
        stream: bool = False,
        prediction_type: Any = AnyPrediction,
    ) -> Any:
        """
        Create a prediction from a model version, a model, or a deployment.

        Exactly one of `version`, `model` (`owner/name`) or `deployment`
        (`owner/name`) must be given. The returned record is the creation
        response, usually with status `starting`; pass it to `wait` to follow it.
        """
        targets = [target for target in (version, model, deployment) if target is not None]
        if len(targets) != 1:
            raise ValueError("Specify exactly one of version, model or deployment")

        params: dict[str, Any] = {"input": Value.from_codable(input)}
        if version is not None:
            params["version"] = version
            path = "predictions"
        elif model is not None:
            path = f"models/{model}/predictions"
        else:
            path = f"deployments/{deployment}/predictions"

        params.update(self._webhook_params(webhook))
        if stream:
            params["stream"] = True

        return await self._fetch(prediction_type, "POST", path, params=params)

    async def list_predictions(
        self, cursor: Optional[str] = None, prediction_type: Any = AnyPrediction
    ) -> Page:
        return await self._fetch(Page[prediction_type], "GET", "predictions", cursor=cursor)

    async def get_prediction(self, id: str, prediction_type: Any = AnyPrediction) -> Any:
        return await self._fetch(prediction_type, "GET", f"predictions/{id}")

    async def cancel_prediction(self, id: str, prediction_type: Any = AnyPrediction) -> Any:
        return await self._fetch(prediction_type, "POST", f"predictions/{id}/cancel")

    # Trainings

    async def create_training(
        self,
        model: str,
        version: str,
        destination: str,
        input: Any,
        webhook: Optional[Webhook] = None,
        training_type: Any = AnyTraining,
    ) -> Any:
        """Train a new version of `destination` (`owner/name`) from a base model version"""
        params: dict[str, Any] = {
            "destination": destination,
            "input": Value.from_codable(input),
        }
        params.update(self._webhook_params(webhook))

        return await self._fetch(
            training_type, "POST", f"models/{model}/versions/{version}/trainings", params=params
        )

    async def list_trainings(
        self, cursor: Optional[str] = None, training_type: Any = AnyTraining
    ) -> Page:
        return await self._fetch(Page[training_type], "GET", "trainings", cursor=cursor)

    async def get_training(self, id: str, training_type: Any = AnyTraining) -> Any:
        return await self._fetch(training_type, "GET", f"trainings/{id}")

    async def cancel_training(self, id: str, training_type: Any = AnyTraining) -> Any:
        return await self._fetch(training_type, "POST", f"trainings/{id}/cancel")

    # Jobs

    async def wait(
        self,
        job: JobT,
        policy: Optional[RetryPolicy] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobT:
        """
        Refresh a prediction or training until it terminates.

        Uses the client's retry policy unless `policy` is given. See
        `wait_for_job` for the progress callback and failure semantics.
        """
        job_type = type(job)
        if isinstance(job, Training):
            fetch = partial(self.get_training, training_type=job_type)
        else:
            fetch = partial(self.get_prediction, prediction_type=job_type)

        return await wait_for_job(job, fetch, policy or self.retry_policy, on_progress)

    async def cancel(self, job: JobT) -> JobT:
        """Cancel a prediction or training and return the server's updated record"""
        if isinstance(job, Training):
            return await self.cancel_training(job.id, training_type=type(job))
        return await self.cancel_prediction(job.id, prediction_type=type(job))

    async def paginate(
        self, list_page: Callable[..., Awaitable[Page]], **kwargs: Any
    ) -> AsyncIterator[Any]:
        """Yields every result of a list operation, following `next` cursors"""
        cursor = None
        while True:
            page = await list_page(cursor=cursor, **kwargs)
            for result in page.results:
                yield result
            if page.next is None:
                return
            cursor = page.next

    # Models

    async def list_models(self, cursor: Optional[str] = None) -> Page[Model]:
        return await self._fetch(Page[Model], "GET", "models", cursor=cursor)

    async def get_model(self, id: str) -> Model:
        return await self._fetch(Model, "GET", f"models/{id}")

    async def create_model(
        self,
        owner: str,
        name: str,
        visibility: Visibility,
        hardware: str,
        description: Optional[str] = None,
        github_url: Optional[str] = None,
        paper_url: Optional[str] = None,
        license_url: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> Model:
        params: dict[str, Any] = {
            "owner": owner,
            "name": name,
            "visibility": Visibility(visibility).value,
            "hardware": hardware,
        }
        optional = {
            "description": description,
            "github_url": github_url,
            "paper_url": paper_url,
            "license_url": license_url,
            "cover_image_url": cover_image_url,
        }
        params.update({key: value for key, value in optional.items() if value is not None})

        return await self._fetch(Model, "POST", "models", params=params)

    async def list_model_versions(
        self, id: str, cursor: Optional[str] = None
    ) -> Page[ModelVersion]:
        return await self._fetch(Page[ModelVersion], "GET", f"models/{id}/versions", cursor=cursor)

    async def get_model_version(self, id: str, version: str) -> ModelVersion:
        return await self._fetch(ModelVersion, "GET", f"models/{id}/versions/{version}")

    async def list_model_collections(
        self, cursor: Optional[str] = None
    ) -> Page[ModelCollection]:
        return await self._fetch(Page[ModelCollection], "GET", "collections", cursor=cursor)

    async def get_model_collection(self, slug: str) -> ModelCollection:
        return await self._fetch(ModelCollection, "GET", f"collections/{slug}")

    # Account and hardware

    async def get_current_account(self) -> Account:
        return await self._fetch(Account, "GET", "account")

    async def list_hardware(self) -> list[Hardware]:
        data = await self._request("GET", "hardware")
        return [Hardware.model_validate(item) for item in data]

    # Transport

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self, has_body: bool) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if has_body:
            headers["Content-Type"] = "application/json"
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        return headers

    @staticmethod
    def _webhook_params(webhook: Optional[Webhook]) -> dict[str, Any]:
        if webhook is None:
            return {}
        return {
            "webhook": webhook.url,
            "webhook_events_filter": [event.value for event in webhook.events],
        }

    async def _fetch(
        self,
        response_type: type[ResponseT],
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        cursor: Optional[str] = None,
    ) -> ResponseT:
        if cursor is not None:
            params = {**(params or {}), "cursor": cursor}
        data = await self._request(method, path, params)
        return response_type.model_validate(data)

    async def _request(
        self, method: str, path: str, params: Optional[dict[str, Any]] = None
    ) -> Any:
        """Sends a request and returns the decoded JSON body of a 2xx response"""
        url = f"{self.base_url}{path}"
        query = None
        body = None
        if params:
            if method == "GET":
                query = {key: str(value) for key, value in params.items()}
            else:
                body = Value.from_codable(params).dumps()

        self.logger.debug(f"{method} {url}")
        session = self._get_session()
        async with session.request(
            method, url, params=query, data=body, headers=self._headers(body is not None)
        ) as response:
            text = await response.text()
            if 200 <= response.status < 300:
                return json.loads(text) if text else None

            detail = _error_detail(text)
            self.logger.error(f"HTTP error {response.status} at {method} {url}: {detail}")
            raise APIError(response.status, detail)


def _error_detail(text: str) -> str:
    """Extracts the `detail` field of an error body, falling back to the raw text"""
    try:
        error = json.loads(text)
    except ValueError:
        return f"invalid response: {text}"

    if isinstance(error, dict) and isinstance(error.get("detail"), str):
        return error["detail"]
    return f"invalid response: {text}"
