"""Sources of hyperparameter search tasks.

A search worker only needs three capabilities from its queue: fetch the next
task (blocking), report a finished task and report a failed one. Anything
implementing ``TaskSource`` can be injected into ``HyperoptClient``:

    source = ClearMLTaskSource.from_env(queue_name="rgbdforest")
    client = HyperoptClient(images, test_images, config, source)
    client.run()

``InMemoryTaskSource`` serves tasks from a local queue (tests, single-machine
runs); ``ClearMLTaskSource`` consumes a ClearML execution queue.
"""

from __future__ import annotations

import base64
import itertools
import os
import queue
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Protocol, runtime_checkable

import requests
from loguru import logger

from rgbdforest.errors import ConfigurationError

if TYPE_CHECKING:
    from rgbdforest.hpo.client import TaskReport
    from rgbdforest.hpo.parameters import TaskParameters


@dataclass
class Task:
    """One hyperparameter configuration fetched from a queue.

    Attributes:
        task_id: Queue-assigned identifier
        parameters: Raw hyperparameter fields, parsed by ``TaskParameters.from_fields``
        raw: Backend-specific task handle
    """

    task_id: str
    parameters: dict[str, Any]
    raw: Any = None


@runtime_checkable
class TaskSource(Protocol):
    """Capabilities a search worker needs from its task queue."""

    def fetch_next(self) -> Task:
        """Block until the next task is available and return it."""
        ...

    def report(self, task: Task, report: "TaskReport") -> None:
        """Report the aggregated loss of a finished task."""
        ...

    def report_failure(self, task: Task, reason: str) -> None:
        """Report that a task could not be completed."""
        ...


class InMemoryTaskSource:
    """Task source backed by a local ``queue.Queue``.

    Reports and failures are recorded by task id.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[Task] = queue.Queue()
        self._ids = itertools.count(1)
        self.reports: dict[str, "TaskReport"] = {}
        self.failures: dict[str, str] = {}

    def put(self, parameters: Mapping[str, Any], task_id: str | None = None) -> Task:
        """Enqueue a task with the given hyperparameter fields."""
        task = Task(task_id=task_id or f"task-{next(self._ids)}", parameters=dict(parameters))
        self._queue.put(task)
        return task

    def submit(self, parameters: "TaskParameters", name: str | None = None) -> str:
        return self.put(parameters.to_fields(), task_id=name).task_id

    def fetch_next(self, timeout: float | None = None) -> Task:
        """Next task; raises ``queue.Empty`` if ``timeout`` expires first."""
        return self._queue.get(timeout=timeout)

    def report(self, task: Task, report: "TaskReport") -> None:
        self.reports[task.task_id] = report

    def report_failure(self, task: Task, reason: str) -> None:
        self.failures[task.task_id] = reason

    def pending(self) -> int:
        return self._queue.qsize()


@dataclass
class ClearMLTaskSource:
    """Consume hyperparameter tasks from a ClearML execution queue.

    Tasks are pulled with the ``queues.get_next_task`` REST endpoint, their
    hyperparameters are read from the ``General`` section through the ClearML
    SDK, and results are reported as scalars plus a ``results`` artifact.
    """

    queue_name: str
    api_server: str
    access_key: str = ""
    secret_key: str = ""
    project_name: str = "rgbdforest/hyperopt"
    parameter_section: str = "General"
    poll_interval: float = 10.0
    _token: str = field(default="", repr=False)
    _token_expiry: float = 0.0
    _queue_id: str = ""

    @classmethod
    def from_env(cls, queue_name: str, **kwargs: Any) -> "ClearMLTaskSource":
        """Create a source from the ``CLEARML_API_*`` environment variables."""
        if not os.environ.get("CLEARML_API_HOST"):
            raise ConfigurationError(
                "CLEARML_API_HOST is not set; cannot connect to the ClearML server"
            )
        return cls(
            queue_name=queue_name,
            api_server=os.environ["CLEARML_API_HOST"],
            access_key=os.environ.get("CLEARML_API_ACCESS_KEY", ""),
            secret_key=os.environ.get("CLEARML_API_SECRET_KEY", ""),
            **kwargs,
        )

    # -- REST --

    @property
    def _headers(self) -> dict[str, str]:
        if time.time() > self._token_expiry - 60:
            self._authenticate()
        return {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}

    def _authenticate(self) -> None:
        creds = base64.b64encode(f"{self.access_key}:{self.secret_key}".encode()).decode()
        resp = requests.post(
            f"{self.api_server}/auth.login",
            json={},
            headers={"Content-Type": "application/json", "Authorization": f"Basic {creds}"},
            timeout=10,
        )
        resp.raise_for_status()
        self._token = resp.json()["data"]["token"]
        self._token_expiry = time.time() + 3600

    def _post(self, endpoint: str, payload: dict) -> dict:
        """POST to the ClearML API; connection and HTTP errors yield ``{}``."""
        try:
            resp = requests.post(
                f"{self.api_server}/{endpoint}",
                json=payload,
                headers=self._headers,
                timeout=30,
            )
            resp.raise_for_status()
            return resp.json().get("data") or {}
        except requests.ConnectionError:
            logger.error(f"Cannot reach ClearML API at {self.api_server}")
            return {}
        except requests.HTTPError as exc:
            logger.error(f"ClearML API error on {endpoint}: {exc}")
            return {}

    def queue_id(self) -> str:
        """Id of the configured queue, looked up once."""
        if not self._queue_id:
            data = self._post("queues.get_all", {"name": self.queue_name})
            queues = [q for q in data.get("queues", []) if q.get("name") == self.queue_name]
            if not queues:
                raise ConfigurationError(f"ClearML queue '{self.queue_name}' not found")
            self._queue_id = queues[0]["id"]
        return self._queue_id

    # -- TaskSource --

    def fetch_next(self) -> Task:
        """Poll the queue until a task is dequeued."""
        queue_id = self.queue_id()
        while True:
            data = self._post("queues.get_next_task", {"queue": queue_id})
            entry = data.get("entry") or {}
            task_id = entry.get("task")
            if task_id:
                return self._load(task_id)
            logger.debug(f"Queue '{self.queue_name}' empty, polling again in {self.poll_interval}s")
            time.sleep(self.poll_interval)

    def _load(self, task_id: str) -> Task:
        from clearml import Task as ClearMLTask

        clearml_task = ClearMLTask.get_task(task_id=task_id)
        clearml_task.mark_started(force=True)
        sections = clearml_task.get_parameters_as_dict()
        parameters = dict(sections.get(self.parameter_section, {}))
        logger.info(f"Fetched task {task_id} from queue '{self.queue_name}'")
        return Task(task_id=task_id, parameters=parameters, raw=clearml_task)

    def report(self, task: Task, report: "TaskReport") -> None:
        clearml_task = task.raw
        clearml_logger = clearml_task.get_logger()
        clearml_logger.report_scalar("loss", "mean", value=report.loss, iteration=0)
        clearml_logger.report_scalar("loss", "variance", value=report.variance, iteration=0)
        for i, result in enumerate(report.results):
            clearml_logger.report_scalar("run_loss", "loss", value=result["loss"], iteration=i)
        clearml_task.upload_artifact(name="results", artifact_object=report.to_dict())
        clearml_task.mark_completed()
        logger.info(f"Reported task {task.task_id}: loss {report.loss:.4f}")

    def report_failure(self, task: Task, reason: str) -> None:
        task.raw.mark_failed(status_reason=reason, force=True)
        logger.warning(f"Marked task {task.task_id} failed: {reason}")

    # -- Producer side --

    def submit(self, parameters: "TaskParameters", name: str | None = None) -> str:
        """Create a task holding ``parameters`` and enqueue it.

        Returns:
            The id of the new task
        """
        from clearml import Task as ClearMLTask

        clearml_task = ClearMLTask.create(
            project_name=self.project_name,
            task_name=name or "rgbdforest-hyperopt",
            task_type=ClearMLTask.TaskTypes.training,
        )
        clearml_task.set_parameters(
            {f"{self.parameter_section}/{k}": v for k, v in parameters.to_fields().items()}
        )
        ClearMLTask.enqueue(clearml_task, queue_name=self.queue_name)
        logger.info(f"Enqueued task {clearml_task.id} on '{self.queue_name}'")
        return clearml_task.id
