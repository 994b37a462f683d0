"""
Main WorkflowOrchestrator class that drives generate-then-synthesize jobs

Accepts prompts and workflows, fans them out to the requested models (in
parallel or strictly in order), applies per-model fallback and the
partial-success policy, and finally folds the successful outputs together
with a single synthesis call.
"""

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Any, Set, Union, Callable

from .config import OrchestratorConfig
from .exceptions import (
    HybridOrchestratorError,
    InvalidRequestError,
    JobNotFoundError,
    ProviderError,
    TimeoutExceededError,
    SynthesisError,
    JobCancelledError,
    CriticalModelError,
    GenerationFailedError,
    ErrorRegistry,
)
from ..adapters.base import InvokeOptions
from ..adapters.registry import AdapterRegistry
from ..models.job import Job, JobStatus, ModelResult, ModelError, ModelOutcome, utcnow
from ..models.workflow import WorkflowDefinition, GenerateStep, JobOptions
from ..services.concurrency import ConcurrencyLimiter
from ..services.credential_vault import CredentialVault
from ..services.event_service import EventSink, EventType, NullEventSink
from ..services.fault_tolerance import CircuitBreaker, CircuitState
from ..services.stores import JobStore, InMemoryJobStore
from ..utils.logger import get_logger, LoggerContext
from ..utils.templating import render_template, format_responses


@dataclass
class _JobRun:
    """Driver-side state for one job; never leaves the orchestrator."""
    job: Job
    steps: List[GenerateStep]
    first_prompt: str
    parallel: bool
    timeout_seconds: float
    deadline: float
    synthesis_model: str
    synthesis_template: str
    synthesis_output_var: str
    critical_models: Set[str]
    options: JobOptions
    finished: asyncio.Future
    driver: Optional[asyncio.Task] = None
    work_task: Optional[asyncio.Task] = None
    # Snapshot writes for one job land in the order they were issued
    persist_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class JobHandle:
    """
    Handle returned when a job is accepted.

    ``await handle`` (or ``await handle.wait()``) resolves to the terminal
    Job snapshot once the job has completed or failed.
    """

    def __init__(self, job_id: str, finished: asyncio.Future, orchestrator: "WorkflowOrchestrator"):
        self._job_id = job_id
        self._finished = finished
        self._orchestrator = orchestrator

    @property
    def job_id(self) -> str:
        return self._job_id

    def done(self) -> bool:
        return self._finished.done()

    async def wait(self, timeout: Optional[float] = None) -> Job:
        """Wait for the job to reach a terminal status."""
        if timeout is None:
            job = await asyncio.shield(self._finished)
        else:
            job = await asyncio.wait_for(asyncio.shield(self._finished), timeout=timeout)
        return copy.deepcopy(job)

    def __await__(self):
        return self.wait().__await__()

    async def snapshot(self) -> Job:
        """Current state of the job, terminal or not."""
        return await self._orchestrator.get_job(self._job_id)

    async def cancel(self) -> bool:
        return await self._orchestrator.cancel_job(self._job_id)

    def __repr__(self) -> str:
        return f"JobHandle(job_id={self._job_id!r}, done={self.done()})"


class WorkflowOrchestrator:
    """
    Main orchestrator class that coordinates adapters, credentials and jobs.

    Provides a unified interface for:
    - Prompt and workflow submission
    - Parallel or sequential fan-out with per-model fallback
    - Partial-success aggregation and synthesis
    - Job deadlines, cancellation and lifecycle events
    - Global and per-provider concurrency caps
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        vault: Optional[CredentialVault] = None,
        job_store: Optional[JobStore] = None,
        event_sink: Optional[EventSink] = None,
        config: Optional[OrchestratorConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        """
        Initialize the WorkflowOrchestrator.

        Args:
            registry: Adapters keyed by model id
            vault: Credential vault consulted before every non-local call
            job_store: Write-through persistence for job snapshots
            event_sink: Receiver of lifecycle events
            config: Orchestrator configuration
            circuit_breaker: Provider-level breaker; built from config when omitted
        """
        self.registry = registry
        self.vault = vault
        self.job_store = job_store or InMemoryJobStore()
        self.event_sink = event_sink or NullEventSink()
        self.config = config or OrchestratorConfig()

        self.provider_breaker: Optional[CircuitBreaker] = circuit_breaker
        if self.provider_breaker is None and self.config.provider_circuit_breaker:
            self.provider_breaker = CircuitBreaker(self.config.circuit_breaker, name="provider")

        self.limiter = ConcurrencyLimiter(
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            max_calls_per_provider=self.config.max_concurrent_calls_per_provider,
            provider_limits=self.config.provider_concurrency
        )
        self.error_registry = ErrorRegistry()

        self._runs: Dict[str, _JobRun] = {}
        self._evictions: Dict[str, asyncio.TimerHandle] = {}
        self._is_running = False
        self._is_stopped = False

        self.logger = get_logger(__name__)

    async def start(self):
        """Start accepting jobs."""
        self._is_running = True
        self._is_stopped = False
        self.logger.info("Starting WorkflowOrchestrator", extra={
            "models": self.registry.model_ids(),
            "vault_enabled": self.vault is not None,
            "provider_circuit_breaker": self.provider_breaker is not None,
            "max_concurrent_jobs": self.config.max_concurrent_jobs
        })

    async def stop(self):
        """Stop accepting jobs and cancel every job still running."""
        self.logger.info("Stopping WorkflowOrchestrator")
        self._is_stopped = True

        active = [run for run in self._runs.values() if not run.job.is_terminal()]
        for run in active:
            await self._fail(run, JobCancelledError(run.job.job_id))

        tasks = []
        for run in self._runs.values():
            for task in (run.driver, run.work_task):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()

        self._is_running = False
        self.logger.info("WorkflowOrchestrator stopped", extra={"cancelled_jobs": len(active)})

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def run_prompt(
        self,
        user_id: str,
        prompt_text: str,
        requested_models: List[str],
        options: Optional[Union[JobOptions, Dict[str, Any]]] = None
    ) -> JobHandle:
        """
        Submit one prompt to several models and synthesize their answers.

        Args:
            user_id: Caller the job and its credentials belong to
            prompt_text: Prompt sent verbatim to every requested model
            requested_models: Ordered, unique model ids
            options: JobOptions or equivalent dict

        Returns:
            JobHandle resolved when the job completes or fails

        Raises:
            InvalidRequestError: the request was rejected before a job was created
        """
        options = self._coerce_options(options)
        if not prompt_text or not prompt_text.strip():
            raise InvalidRequestError("prompt_text", "must not be empty")

        step = GenerateStep(
            name="generate",
            models=list(requested_models or []),
            prompt_template=prompt_text,
            output_var="generated"
        )
        return await self._submit(
            user_id=user_id,
            steps=[step],
            first_prompt=prompt_text,
            variables={"prompt": prompt_text},
            options=options,
            parallel=True if options.parallel is None else options.parallel,
            timeout_seconds=options.timeout_seconds or self.config.job_timeout_seconds,
            synthesis_model=options.synthesis_model or self.config.default_synthesis_model,
            synthesis_template=options.synthesis_prompt_template or self.config.synthesis_prompt_template,
            synthesis_output_var="synthesis",
            critical_models=list(options.critical_models)
        )

    async def run_workflow(
        self,
        user_id: str,
        workflow: Union[WorkflowDefinition, Dict[str, Any], str],
        input_variables: Optional[Dict[str, Any]] = None,
        options: Optional[Union[JobOptions, Dict[str, Any]]] = None
    ) -> JobHandle:
        """
        Submit a workflow whose step prompts are rendered from variables.

        Args:
            user_id: Caller the job and its credentials belong to
            workflow: WorkflowDefinition, its dict form, or YAML text
            input_variables: Values for ``${{var}}`` placeholders
            options: JobOptions or equivalent dict; explicit values override the workflow

        Returns:
            JobHandle resolved when the job completes or fails
        """
        options = self._coerce_options(options)
        definition = self._coerce_workflow(workflow)
        definition.validate()

        variables = dict(input_variables or {})
        first_step = definition.generate.steps[0]
        first_prompt = render_template(first_step.prompt_template, variables)
        if not first_prompt.strip():
            raise InvalidRequestError("prompt_template", "rendered prompt is empty", first_step.name)

        synthesize = definition.synthesize
        return await self._submit(
            user_id=user_id,
            steps=list(definition.generate.steps),
            first_prompt=first_prompt,
            variables=variables,
            options=options,
            parallel=definition.generate.parallel if options.parallel is None else options.parallel,
            timeout_seconds=(
                options.timeout_seconds or definition.timeout_seconds or self.config.job_timeout_seconds
            ),
            synthesis_model=options.synthesis_model or synthesize.model or self.config.default_synthesis_model,
            synthesis_template=(
                options.synthesis_prompt_template or synthesize.prompt_template
                or self.config.synthesis_prompt_template
            ),
            synthesis_output_var=synthesize.output_var or "synthesis",
            critical_models=list(definition.critical_models) + list(options.critical_models),
            workflow_name=definition.workflow_name
        )

    def _coerce_options(self, options: Optional[Union[JobOptions, Dict[str, Any]]]) -> JobOptions:
        if options is None:
            return JobOptions()
        if isinstance(options, JobOptions):
            return options
        if isinstance(options, dict):
            return JobOptions.from_dict(options)
        raise InvalidRequestError("options", "must be JobOptions or a dict", type(options).__name__)

    def _coerce_workflow(self, workflow: Union[WorkflowDefinition, Dict[str, Any], str]) -> WorkflowDefinition:
        if isinstance(workflow, WorkflowDefinition):
            return workflow
        if isinstance(workflow, dict):
            return WorkflowDefinition.from_dict(workflow)
        if isinstance(workflow, str):
            return WorkflowDefinition.from_yaml(workflow)
        raise InvalidRequestError("workflow", "must be a WorkflowDefinition, dict or YAML string", type(workflow).__name__)

    async def _submit(
        self,
        user_id: str,
        steps: List[GenerateStep],
        first_prompt: str,
        variables: Dict[str, Any],
        options: JobOptions,
        parallel: bool,
        timeout_seconds: float,
        synthesis_model: Optional[str],
        synthesis_template: str,
        synthesis_output_var: str,
        critical_models: List[str],
        workflow_name: Optional[str] = None
    ) -> JobHandle:
        if self._is_stopped:
            raise InvalidRequestError("orchestrator", "orchestrator has been stopped")
        if not user_id:
            raise InvalidRequestError("user_id", "must not be empty")

        requested_models: List[str] = []
        for step in steps:
            requested_models.extend(step.models)
        if not requested_models:
            raise InvalidRequestError("requested_models", "at least one model is required")
        if len(set(requested_models)) != len(requested_models):
            raise InvalidRequestError("requested_models", "model ids must be unique", requested_models)
        for model_id in requested_models:
            if model_id not in self.registry:
                raise InvalidRequestError("requested_models", "no adapter registered for model", model_id)

        critical = set(critical_models)
        unknown_critical = sorted(critical - set(requested_models))
        if unknown_critical:
            raise InvalidRequestError("critical_models", "critical models must be requested", unknown_critical)

        if not synthesis_model:
            raise InvalidRequestError("synthesis_model", "no synthesis model configured")
        if synthesis_model not in self.registry:
            raise InvalidRequestError("synthesis_model", "no adapter registered for model", synthesis_model)
        if timeout_seconds is None or timeout_seconds <= 0:
            raise InvalidRequestError("timeout_seconds", "must be positive", timeout_seconds)

        loop = asyncio.get_running_loop()
        job = Job(
            job_id=str(uuid.uuid4()),
            user_id=user_id,
            requested_models=requested_models,
            workflow_name=workflow_name,
            prompt_text=first_prompt,
            critical_models=[model_id for model_id in requested_models if model_id in critical],
            synthesis_model=synthesis_model,
            variables=dict(variables)
        )
        run = _JobRun(
            job=job,
            steps=steps,
            first_prompt=first_prompt,
            parallel=parallel,
            timeout_seconds=float(timeout_seconds),
            deadline=loop.time() + float(timeout_seconds),
            synthesis_model=synthesis_model,
            synthesis_template=synthesis_template,
            synthesis_output_var=synthesis_output_var,
            critical_models=critical,
            options=options,
            finished=loop.create_future()
        )

        job.transition_to(JobStatus.GENERATING)
        self._runs[job.job_id] = run

        self.logger.info("Job accepted", extra={
            "job_id": job.job_id,
            "user_id": user_id,
            "workflow_name": workflow_name,
            "requested_models": requested_models,
            "parallel": parallel,
            "timeout_seconds": run.timeout_seconds
        })
        self._emit(job, EventType.STARTED, {
            "user_id": user_id,
            "workflow_name": workflow_name,
            "requested_models": list(requested_models),
            "status": job.status.value
        })
        await self._persist(run)

        run.driver = asyncio.ensure_future(self._drive(run))
        return JobHandle(job.job_id, run.finished, self)

    # ------------------------------------------------------------------
    # Job driver
    # ------------------------------------------------------------------

    def _remaining(self, run: _JobRun) -> float:
        return run.deadline - asyncio.get_running_loop().time()

    async def _drive(self, run: _JobRun):
        """Run the job under its wall-clock deadline."""
        job = run.job
        with LoggerContext(job_id=job.job_id, user_id=job.user_id, component="orchestrator"):
            run.work_task = asyncio.ensure_future(self._execute(run))
            try:
                await asyncio.wait_for(asyncio.shield(run.work_task), timeout=max(self._remaining(run), 0))
            except asyncio.TimeoutError:
                run.work_task.cancel()
                await self._fail_timeout(run)

    async def _execute(self, run: _JobRun):
        job = run.job
        try:
            async with self.limiter.job_slot():
                for index, step in enumerate(run.steps):
                    if job.is_terminal():
                        return
                    if index == 0:
                        prompt = run.first_prompt
                    else:
                        prompt = render_template(step.prompt_template, job.variables)
                    await self._generate_step(run, step, prompt)
                    self._store_step_output(job, step)

                if job.is_terminal():
                    return
                await self._complete_generation(run)
        except HybridOrchestratorError as e:
            await self._fail(run, e)
        except Exception as e:
            self.logger.error("Unexpected error while running job", exc_info=True)
            await self._fail(run, HybridOrchestratorError(f"Unexpected error: {str(e)}", "INTERNAL_ERROR"))

    async def _generate_step(self, run: _JobRun, step: GenerateStep, prompt: str):
        self.logger.debug(f"Running step {step.name}", extra={
            "step": step.name,
            "models": step.models,
            "parallel": run.parallel
        })
        if run.parallel:
            await asyncio.gather(*(self._run_slot(run, model_id, prompt) for model_id in step.models))
        else:
            for model_id in step.models:
                if run.job.is_terminal():
                    return
                await self._run_slot(run, model_id, prompt)

    def _store_step_output(self, job: Job, step: GenerateStep):
        if job.is_terminal():
            return
        outputs = {
            model_id: job.results[model_id].content
            for model_id in step.models
            if isinstance(job.results.get(model_id), ModelResult)
        }
        for model_id, text in outputs.items():
            job.variables[f"{step.output_var}.{model_id}"] = text
        if len(outputs) == 1:
            job.variables[step.output_var] = next(iter(outputs.values()))
        elif outputs:
            job.variables[step.output_var] = format_responses(outputs)

    async def _run_slot(self, run: _JobRun, model_id: str, prompt: str):
        """Fill one result slot: primary attempt, then at most one fallback."""
        job = run.job
        if job.is_terminal():
            return

        outcome = await self._attempt(run, model_id, prompt)
        if isinstance(outcome, ModelError):
            fallback_id = self.config.fallback_models.get(model_id)
            if fallback_id and not job.is_terminal() and self._remaining(run) > 0:
                self.logger.info(f"Model {model_id} failed, trying fallback {fallback_id}", extra={
                    "model_id": model_id,
                    "fallback_model_id": fallback_id,
                    "error_code": outcome.error_code
                })
                fallback = await self._attempt(run, fallback_id, prompt)
                if isinstance(fallback, ModelResult):
                    fallback.raw_metadata = dict(fallback.raw_metadata or {}, fallback_for=model_id)
                    outcome = fallback
                else:
                    codes = (outcome.error_code, fallback.error_code)
                    outcome = ModelError(
                        message=f"{outcome.message}; fallback {fallback_id}: {fallback.message}",
                        provider_id=outcome.provider_id,
                        model_id=model_id,
                        error_code="TIMEOUT" if "TIMEOUT" in codes else outcome.error_code
                    )

        await self._record_outcome(run, model_id, outcome)

    async def _credential_for(self, run: _JobRun, adapter, budget: float):
        if self.vault is None or not adapter.requires_credential:
            return None
        return await asyncio.wait_for(
            self.vault.get_valid_credential(run.job.user_id, adapter.provider_id),
            timeout=budget
        )

    def _chunk_relay(self, run: _JobRun, model_id: str) -> Optional[Callable[[str], None]]:
        callback = run.options.on_partial_chunk
        if not run.options.stream and callback is None:
            return None

        def relay(chunk: str):
            if run.job.is_terminal():
                return
            if callback is not None:
                try:
                    callback(model_id, chunk)
                except Exception as e:
                    self.logger.warning(f"Partial chunk callback failed: {str(e)}", extra={"model_id": model_id})
            if run.options.stream:
                self._emit(run.job, EventType.MODEL_RESULT, {
                    "model_id": model_id,
                    "content": chunk,
                    "is_partial": True
                })

        return relay

    def _call_budget(self, run: _JobRun) -> float:
        budget = self._remaining(run)
        if run.options.call_timeout_seconds:
            budget = min(budget, run.options.call_timeout_seconds)
        return budget

    async def _attempt(self, run: _JobRun, model_id: str, prompt: str) -> ModelOutcome:
        """One adapter call; every failure comes back as a ModelError."""
        job = run.job
        provider_id = model_id
        budget = 0.0
        try:
            adapter = self.registry.get(model_id)
            provider_id = adapter.provider_id

            budget = self._call_budget(run)
            if budget <= 0:
                raise TimeoutExceededError(f"invoke {model_id}", run.timeout_seconds)
            credential = await self._credential_for(run, adapter, budget)

            async with self.limiter.provider_slot(provider_id):
                if job.is_terminal():
                    return ModelError(
                        message="job finished before the call was issued",
                        provider_id=provider_id,
                        model_id=model_id,
                        error_code=job.error_code or "CANCELLED"
                    )

                budget = self._call_budget(run)
                if budget <= 0:
                    raise TimeoutExceededError(f"invoke {model_id}", run.timeout_seconds)
                if self.provider_breaker is not None:
                    self.provider_breaker.before_call(provider_id)

                invoke_options = InvokeOptions(
                    max_tokens=run.options.max_tokens,
                    temperature=run.options.temperature,
                    timeout_seconds=budget,
                    on_partial_chunk=self._chunk_relay(run, model_id),
                    custom_parameters=dict(run.options.custom_parameters),
                    credential=credential
                )
                self.logger.debug(f"Invoking model {model_id}", extra={
                    "model_id": model_id,
                    "provider_id": provider_id,
                    "timeout_seconds": budget
                })
                try:
                    result = await asyncio.wait_for(adapter.invoke(prompt, invoke_options), timeout=budget)
                    if not isinstance(result, ModelResult):
                        raise ProviderError(
                            f"Adapter returned {type(result).__name__} instead of ModelResult",
                            provider_id=provider_id,
                            model_id=model_id
                        )
                except Exception:
                    if self.provider_breaker is not None:
                        self.provider_breaker.record_failure(provider_id)
                    raise
                except BaseException:
                    if self.provider_breaker is not None:
                        self.provider_breaker.release(provider_id)
                    raise

                if self.provider_breaker is not None:
                    self.provider_breaker.record_success(provider_id)
                return result

        except asyncio.TimeoutError:
            error = TimeoutExceededError(f"invoke {model_id}", budget)
        except HybridOrchestratorError as e:
            error = e
        except Exception as e:
            error = ProviderError(str(e) or e.__class__.__name__, provider_id=provider_id, model_id=model_id)

        self.error_registry.record_error(error)
        self.logger.warning(f"Model {model_id} failed: {error.message}", extra={
            "model_id": model_id,
            "provider_id": provider_id,
            "error_code": error.error_code
        })
        return ModelError(
            message=error.message,
            provider_id=provider_id,
            model_id=model_id,
            error_code=error.error_code
        )

    async def _record_outcome(self, run: _JobRun, model_id: str, outcome: ModelOutcome):
        job = run.job
        if job.is_terminal():
            self.logger.debug(f"Discarding outcome for model {model_id}; job already {job.status.value}")
            return

        job.record_result(model_id, outcome)
        if isinstance(outcome, ModelResult):
            self._emit(job, EventType.MODEL_RESULT, {
                "model_id": model_id,
                "result": outcome.to_dict(),
                "is_partial": False
            })
        else:
            self._emit(job, EventType.MODEL_ERROR, {
                "model_id": model_id,
                "error": outcome.to_dict()
            })
            if model_id in run.critical_models:
                await self._fail(run, CriticalModelError(job.job_id, model_id, outcome.message))
                return

        await self._persist(run)

    async def _complete_generation(self, run: _JobRun):
        """Join barrier: every slot is terminal; decide between synthesis and failure."""
        job = run.job
        if job.pending_models():
            # Only reachable if a step exited early without filling its slots
            raise GenerationFailedError(job.job_id, {m: "no result recorded" for m in job.pending_models()})

        if self._remaining(run) <= 0:
            raise TimeoutExceededError(f"job {job.job_id}", run.timeout_seconds)

        successes = job.successful_results()
        failures = job.failed_results()
        if not successes and all(error.error_code == "TIMEOUT" for error in failures.values()):
            raise TimeoutExceededError(f"job {job.job_id}", run.timeout_seconds)
        if not successes:
            raise GenerationFailedError(job.job_id, {
                model_id: error.message for model_id, error in failures.items()
            })

        job.synthesis_input = {model_id: result.content for model_id, result in successes.items()}
        job.transition_to(JobStatus.SYNTHESIZING)
        self.logger.info("Generation finished, synthesizing", extra={
            "succeeded": list(successes),
            "failed": list(failures),
            "synthesis_model": run.synthesis_model
        })
        await self._persist(run)
        await self._synthesize(run)

    def _synthesis_variables(self, job: Job) -> Dict[str, Any]:
        variables: Dict[str, Any] = dict(job.variables)
        variables.update(job.synthesis_input)
        variables["prompt"] = job.prompt_text or ""
        variables["responses"] = format_responses(job.synthesis_input)
        variables["models"] = ", ".join(job.synthesis_input)
        return variables

    async def _synthesize(self, run: _JobRun):
        job = run.job
        prompt = render_template(run.synthesis_template, self._synthesis_variables(job))
        outcome = await self._attempt(run, run.synthesis_model, prompt)

        if job.is_terminal():
            return
        job.synthesis_result = outcome
        job.touch()

        if isinstance(outcome, ModelError):
            self._emit(job, EventType.SYNTHESIS_ERROR, {
                "model_id": run.synthesis_model,
                "error": outcome.to_dict()
            })
            raise SynthesisError(job.job_id, outcome.message, run.synthesis_model)

        job.variables[run.synthesis_output_var] = outcome.content
        job.transition_to(JobStatus.COMPLETED)
        self.logger.info("Job completed", extra={
            "duration_seconds": job.get_duration(),
            "succeeded": list(job.synthesis_input)
        })
        self._emit(job, EventType.COMPLETED, {
            "results": {
                model_id: slot.to_dict() if slot is not None else None
                for model_id, slot in job.results.items()
            },
            "synthesis_input": dict(job.synthesis_input),
            "synthesis": outcome.to_dict()
        })
        await self._finalize(run)

    async def _fail_timeout(self, run: _JobRun):
        job = run.job
        if job.is_terminal():
            return
        for model_id in job.pending_models():
            provider_id = model_id
            if model_id in self.registry:
                provider_id = self.registry.get(model_id).provider_id
            slot = ModelError(
                message=f"Model {model_id} did not respond within the job's time budget",
                provider_id=provider_id,
                model_id=model_id,
                error_code="TIMEOUT"
            )
            job.record_result(model_id, slot)
            self._emit(job, EventType.MODEL_ERROR, {"model_id": model_id, "error": slot.to_dict()})
        await self._fail(run, TimeoutExceededError(f"job {job.job_id}", run.timeout_seconds))

    async def _fail(self, run: _JobRun, error: HybridOrchestratorError) -> bool:
        """Move the job to failed; a no-op once the job is terminal."""
        job = run.job
        if job.is_terminal():
            return False

        job.error_code = error.error_code
        job.error_info = error.message
        job.transition_to(JobStatus.FAILED)
        self.error_registry.record_error(error)

        self.logger.warning(f"Job failed: {error.message}", extra={
            "job_id": job.job_id,
            "error_code": error.error_code
        })
        self._emit(job, EventType.FAILED, {
            "status": job.status.value,
            "error_code": job.error_code,
            "error_info": job.error_info
        })
        await self._finalize(run)
        return True

    async def _finalize(self, run: _JobRun):
        await self._persist(run)
        if not run.finished.done():
            run.finished.set_result(copy.deepcopy(run.job))

        retention = self.config.finished_job_retention_seconds
        if retention is not None and run.job.job_id not in self._evictions:
            self._evictions[run.job.job_id] = asyncio.get_running_loop().call_later(
                retention, self._evict_finished, run.job.job_id
            )

    def _evict_finished(self, job_id: str):
        self._evictions.pop(job_id, None)
        run = self._runs.get(job_id)
        if run is None:
            return
        if any(task is not None and not task.done() for task in (run.driver, run.work_task)):
            # stop() cancels tasks only for runs still held here
            self._evictions[job_id] = asyncio.get_running_loop().call_later(
                max(self.config.finished_job_retention_seconds or 0.0, 1.0), self._evict_finished, job_id
            )
            return
        if run.job.is_terminal():
            del self._runs[job_id]
            self.logger.debug(f"Evicted finished job {job_id} from memory")

    def _emit(self, job: Job, event_type: EventType, payload: Dict[str, Any]):
        try:
            self.event_sink.emit(job.job_id, event_type, payload)
        except Exception as e:
            self.error_registry.record_error(e)
            self.logger.warning(f"Failed to emit {event_type.value} event: {str(e)}", extra={
                "job_id": job.job_id
            })

    async def _persist(self, run: _JobRun):
        job = run.job
        try:
            async with run.persist_lock:
                await self.job_store.upsert_job(job)
        except Exception as e:
            self.error_registry.record_error(e)
            self.logger.warning(f"Failed to persist job snapshot: {str(e)}", extra={
                "job_id": job.job_id,
                "status": job.status.value
            })

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        """
        Get a snapshot of a job.

        Raises:
            JobNotFoundError: the job is neither in memory nor in the job store
        """
        run = self._runs.get(job_id)
        if run is not None:
            return copy.deepcopy(run.job)

        job = await self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a running job.

        In-flight model calls are left to finish; their results are discarded.

        Returns:
            True if the job was running and is now failed with CANCELLED
        """
        run = self._runs.get(job_id)
        if run is None:
            # Raises JobNotFoundError for unknown ids
            await self.get_job(job_id)
            return False

        cancelled = await self._fail(run, JobCancelledError(job_id))
        if cancelled:
            self.logger.info("Job cancelled", extra={"job_id": job_id})
        return cancelled

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[Union[JobStatus, str]] = None,
        limit: int = 100
    ) -> List[Job]:
        """List jobs newest first, merging in-memory jobs with the job store."""
        if isinstance(status, str):
            status = JobStatus(status)

        jobs: Dict[str, Job] = {}
        for run in self._runs.values():
            job = run.job
            if user_id is not None and job.user_id != user_id:
                continue
            if status is not None and job.status != status:
                continue
            jobs[job.job_id] = copy.deepcopy(job)

        try:
            stored = await self.job_store.list_jobs(user_id=user_id, status=status, limit=limit)
        except Exception as e:
            self.error_registry.record_error(e)
            self.logger.warning(f"Failed to list stored jobs: {str(e)}")
            stored = []
        for job in stored:
            jobs.setdefault(job.job_id, job)

        ordered = sorted(jobs.values(), key=lambda job: job.created_at, reverse=True)
        return ordered[:limit]

    def cleanup_finished_jobs(self, max_age_seconds: float = 3600.0) -> int:
        """Evict terminal jobs older than ``max_age_seconds`` from memory."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        expired = [
            job_id for job_id, run in self._runs.items()
            if run.job.is_terminal() and run.job.completed_at is not None and run.job.completed_at <= cutoff
        ]
        for job_id in expired:
            del self._runs[job_id]
            handle = self._evictions.pop(job_id, None)
            if handle is not None:
                handle.cancel()

        if expired:
            self.logger.info(f"Evicted {len(expired)} finished jobs from memory")
        return len(expired)

    async def get_system_health(self) -> Dict[str, Any]:
        """Get comprehensive system health information."""
        adapters = await self.registry.health_check_all()

        provider_circuits = self.provider_breaker.get_status() if self.provider_breaker else {}
        credential_circuits = self.vault.circuit_breaker.get_status() if self.vault else {}
        open_circuits = [
            key for key, status in {**provider_circuits, **credential_circuits}.items()
            if status["state"] == CircuitState.OPEN.value
        ]

        job_counts = {status.value: 0 for status in JobStatus}
        for run in self._runs.values():
            job_counts[run.job.status.value] += 1

        degraded = bool(open_circuits) or any(not info["ready"] for info in adapters.values())
        return {
            "status": "degraded" if degraded else "healthy",
            "is_running": self._is_running,
            "adapters": adapters,
            "provider_circuits": provider_circuits,
            "credential_circuits": credential_circuits,
            "open_circuits": open_circuits,
            "concurrency": self.limiter.get_statistics(),
            "jobs": job_counts,
            "errors": self.error_registry.get_error_statistics(),
            "timestamp": utcnow().isoformat()
        }
