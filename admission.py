import logging
from typing import Any, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from errors import CodemodRunError, QueueUnavailable, StoreUnavailable, Unauthorized, ValidationError
from job_queue import JobQueue
from models import Job
from schemas import CodemodRunEntry, CodemodRunRequest, NotFoundStatus
from status_store import StatusStore

logger = logging.getLogger(__name__)


def error_details(errors: Sequence[Mapping[str, Any]]) -> List[dict]:
    return [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in errors]


def parse_run_request(payload: Mapping[str, Any]) -> CodemodRunRequest:
    try:
        return CodemodRunRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid codemod run request", details=error_details(e.errors())) from e


class AdmissionService:
    """
    Starts codemod runs and reports on them.

    The queue and store clients are owned by the caller and handed in once;
    each operation checks they are reachable before touching anything.
    """

    def __init__(self, job_queue: JobQueue, status_store: StatusStore):
        self.job_queue = job_queue
        self.status_store = status_store

    def submit_run(
        self,
        request: Union[CodemodRunRequest, Mapping[str, Any]],
        user_id: Optional[str],
    ) -> List[CodemodRunEntry]:
        if not user_id:
            raise Unauthorized()
        if not isinstance(request, CodemodRunRequest):
            request = parse_run_request(request)

        self.job_queue.ping()
        self.status_store.ping()

        created: List[CodemodRunEntry] = []
        failures: List[CodemodRunError] = []
        for codemod in request.codemods:
            job = Job(
                codemod_engine=codemod.engine,
                codemod_name=codemod.name,
                codemod_source=codemod.source,
                codemod_arguments=dict(codemod.arguments),
                disable_prettier=codemod.disable_prettier,
                repo_url=request.repo_url,
                branch=request.branch,
                user_id=user_id,
                persistent=request.persistent,
            )
            try:
                job_id = self.job_queue.enqueue(job)
            except (QueueUnavailable, StoreUnavailable) as e:
                logger.error(f"Could not enqueue codemod '{codemod.name}' for user {user_id}: {e.message}")
                failures.append(e)
                continue
            created.append(CodemodRunEntry(job_id=job_id, codemod_name=codemod.name))

        if failures and not created:
            raise failures[0]
        logger.info(f"User {user_id} started {len(created)}/{len(request.codemods)} codemod jobs on {request.repo_url}@{request.branch}")
        return created

    def get_status(self, job_ids: Sequence[str]) -> list:
        self.status_store.ping()
        return [self.status_store.peek(job_id) or NotFoundStatus() for job_id in job_ids]

    def get_output(self, job_ids: Sequence[str]) -> list:
        self.status_store.ping()
        outputs = []
        for job_id in job_ids:
            job = self.job_queue.lookup(job_id)
            if job is not None and job.persistent:
                entry = self.status_store.peek(job_id)
            else:
                entry = self.status_store.consume(job_id)
            outputs.append(entry or NotFoundStatus())
        return outputs
