"""
Parallel Processor
==================

Runs a caller-supplied function over many chunks concurrently and aggregates
results, errors and statistics.

Key Features:
- Bounded thread pool per top-level call (owned by BatchContext)
- Per-chunk retry with exponential backoff
- Dependency-ordered execution in phases
- Resource-aware admission (memory / CPU gauges)
- Cooperative cancellation and cumulative statistics

Usage:
    processor = ParallelProcessor({"max_workers": 4})
    aggregate = processor.process_chunks_parallel(chunks, analyze_chunk)
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Tuple, Union
import threading
import time

from aidp.config import ProcessorConfig
from aidp.logger import AidpLogger, get_logger
from aidp.parallel.dependency_resolver import DependencyResolver, chunk_id
from aidp.parallel.resource_monitor import ResourceMonitor

COMPONENT = "parallel_processor"

ProcessorFn = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


class BatchContext:
    """
    Owns the thread pool for one top-level processing call.

    The pool is registered on the processor while the context is open so
    that ``cancel_processing`` can stop admitting work, and it is always shut
    down on exit.
    """

    def __init__(self, processor: "ParallelProcessor"):
        self.processor = processor
        self.executor: Optional[ThreadPoolExecutor] = None
        self.abandoned = False

    def __enter__(self) -> "BatchContext":
        self.executor = ThreadPoolExecutor(
            max_workers=self.processor.config.max_workers,
            thread_name_prefix="aidp-chunk"
        )
        self.processor._executor = self.executor
        return self

    def abandon(self) -> None:
        """Stop waiting for units that are still running (after a timeout)."""
        self.abandoned = True

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.executor is not None:
            if self.abandoned:
                self.executor.shutdown(wait=False, cancel_futures=True)
            else:
                self.executor.shutdown(wait=True)
        self.processor._executor = None
        self.executor = None


class ParallelProcessor:
    """Multi-threaded chunk processor."""

    def __init__(
        self,
        config: Union[ProcessorConfig, Mapping[str, Any], None] = None,
        logger: Optional[AidpLogger] = None,
        resource_monitor: Optional[ResourceMonitor] = None
    ):
        """
        Initialize parallel processor.

        Args:
            config: ProcessorConfig or a dict of overrides
            logger: Logger handle (defaults to the process-wide logger)
            resource_monitor: Gauge source (defaults to a psutil monitor)
        """
        if config is None:
            self.config = ProcessorConfig()
        elif isinstance(config, ProcessorConfig):
            self.config = config
        else:
            self.config = ProcessorConfig.model_validate(dict(config))

        self._logger = logger
        self.resource_monitor = resource_monitor or ResourceMonitor()
        self.resolver = DependencyResolver()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._processed_count = 0
        self._errors: List[Dict[str, Any]] = []

    @property
    def logger(self) -> AidpLogger:
        return self._logger or get_logger()

    @property
    def executor_status(self) -> str:
        return "running" if self._executor is not None else "not_initialized"

    # =========================================================================
    # Public API
    # =========================================================================

    def process_chunks_parallel(
        self,
        chunks: List[Dict[str, Any]],
        processor_fn: ProcessorFn,
        options: Optional[Dict[str, Any]] = None
    ) -> Union[Dict[str, Any], List]:
        """
        Process every chunk as an independent unit of concurrent work.

        Args:
            chunks: Chunk mappings (each ideally carrying an ``id``)
            processor_fn: ``fn(chunk, options) -> dict``, called concurrently
            options: Per-call overrides (timeout, retry_attempts, retry_backoff);
                also passed through to processor_fn

        Returns:
            Aggregate dict, or ``[]`` when chunks is empty
        """
        if not chunks:
            return []

        options = self._prepare_options(options)
        self._cancelled.clear()
        aggregate = self._new_aggregate(chunks)
        self.logger.info(COMPONENT, "processing_chunks", total_chunks=len(chunks), mode="parallel")

        try:
            with BatchContext(self) as batch:
                self._run_batch(batch, list(enumerate(chunks)), processor_fn, options, aggregate)
        finally:
            self._finalize(aggregate)

        return aggregate

    def process_chunks_with_dependencies(
        self,
        chunks: List[Dict[str, Any]],
        dependency_map: Optional[Mapping[Hashable, List[Hashable]]],
        processor_fn: ProcessorFn,
        options: Optional[Dict[str, Any]] = None
    ) -> Union[Dict[str, Any], List]:
        """
        Process chunks phase by phase so prerequisites always finish first.

        Returns:
            Aggregate dict with ``execution_order``, or ``[]`` when chunks is empty

        Raises:
            CircularDependencyError: If the dependencies contain a cycle
                (raised before any chunk runs)
            ValueError: If two chunks share an id (raised before any chunk runs)
        """
        if not chunks:
            return []

        options = self._prepare_options(options)
        plan = self.resolver.resolve(chunks, dependency_map)

        self._cancelled.clear()
        aggregate = self._new_aggregate(chunks)
        aggregate['execution_order'] = []
        self.logger.info(COMPONENT, "processing_chunks", total_chunks=len(chunks), mode="dependencies",
                         phases=len(plan.phases))

        try:
            with BatchContext(self) as batch:
                for phase_number, indices in enumerate(plan.phase_indices):
                    if self._cancelled.is_set():
                        self.logger.warn(COMPONENT, "processing_cancelled", remaining_phases=len(plan.phases) - phase_number)
                        break

                    self.logger.debug(COMPONENT, "dispatching_phase", phase=phase_number, size=len(indices))
                    aggregate['execution_order'].extend(chunk_id(chunks[index], index) for index in indices)
                    indexed = [(index, chunks[index]) for index in indices]
                    self._run_batch(batch, indexed, processor_fn, options, aggregate)
                    if batch.abandoned:
                        break
        finally:
            self._finalize(aggregate)

        return aggregate

    def process_chunks_with_resource_management(
        self,
        chunks: List[Dict[str, Any]],
        processor_fn: ProcessorFn,
        options: Optional[Dict[str, Any]] = None
    ) -> Union[Dict[str, Any], List]:
        """
        Admit chunks one at a time, waiting while memory or CPU is over limit.

        Gauges are sampled before each admission and recorded in
        ``resource_usage``. A chunk that keeps waiting past
        ``max_resource_waits`` polls is admitted anyway.

        Returns:
            Aggregate dict with ``resource_usage``, or ``[]`` when chunks is empty
        """
        if not chunks:
            return []

        options = self._prepare_options(options)
        self._cancelled.clear()
        aggregate = self._new_aggregate(chunks)
        usage: Dict[str, List[float]] = {'memory': [], 'cpu': [], 'disk': []}
        aggregate['resource_usage'] = usage
        self.logger.info(COMPONENT, "processing_chunks", total_chunks=len(chunks), mode="resource_managed")

        try:
            with BatchContext(self) as batch:
                submitted: List[Tuple[Future, int, Dict[str, Any]]] = []
                for index, chunk in enumerate(chunks):
                    if self._cancelled.is_set():
                        self.logger.warn(COMPONENT, "processing_cancelled", remaining_chunks=len(chunks) - index)
                        break
                    self._wait_for_resources(usage, chunk_id(chunk, index))
                    if self._cancelled.is_set():
                        break
                    try:
                        future = batch.executor.submit(self._process_chunk_with_retry, chunk, processor_fn,
                                                       options, index)
                    except RuntimeError:
                        break
                    submitted.append((future, index, chunk))

                self._collect(batch, submitted, options, aggregate)
        finally:
            self._finalize(aggregate)

        return aggregate

    def get_processing_statistics(self) -> Dict[str, Any]:
        """Cumulative counters for this processor plus current gauges."""
        with self._lock:
            total_processed = self._processed_count
            total_errors = len(self._errors)

        return {
            'total_processed': total_processed,
            'total_errors': total_errors,
            'executor_status': self.executor_status,
            'memory_usage': self.resource_monitor.memory_usage(),
            'cpu_usage': self.resource_monitor.cpu_usage(),
        }

    def cancel_processing(self) -> Dict[str, Any]:
        """
        Stop admitting new work. Units already running are left to finish.

        The flag is cleared when the next top-level call starts.
        """
        self._cancelled.set()
        executor = self._executor
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            processed_count = self._processed_count
            error_count = len(self._errors)

        self.logger.info(COMPONENT, "processing_cancel_requested", processed_count=processed_count,
                         error_count=error_count)
        return {
            'cancelled': True,
            'processed_count': processed_count,
            'error_count': error_count,
        }

    # =========================================================================
    # Execution
    # =========================================================================

    def _run_batch(
        self,
        batch: BatchContext,
        indexed_chunks: List[Tuple[int, Dict[str, Any]]],
        processor_fn: ProcessorFn,
        options: Dict[str, Any],
        aggregate: Dict[str, Any]
    ) -> None:
        submitted: List[Tuple[Future, int, Dict[str, Any]]] = []
        for index, chunk in indexed_chunks:
            if self._cancelled.is_set():
                break
            try:
                future = batch.executor.submit(self._process_chunk_with_retry, chunk, processor_fn, options, index)
            except RuntimeError:
                # executor shut down by cancel_processing
                break
            submitted.append((future, index, chunk))

        self._collect(batch, submitted, options, aggregate)

    def _collect(
        self,
        batch: BatchContext,
        submitted: List[Tuple[Future, int, Dict[str, Any]]],
        options: Dict[str, Any],
        aggregate: Dict[str, Any]
    ) -> None:
        if not submitted:
            return

        timeout = options.get('timeout', self.config.timeout)
        done, not_done = wait([future for future, _, _ in submitted], timeout=timeout)

        if not_done:
            for future in not_done:
                future.cancel()
            batch.abandon()
            self.logger.warn(COMPONENT, "chunks_timed_out", count=len(not_done), timeout=timeout)

        for future, index, chunk in submitted:
            if future not in done or future.cancelled():
                continue

            result = future.result()
            with self._lock:
                self._processed_count += 1

            if result.get('success'):
                aggregate['results'].append(result)
                aggregate['processed_chunks'] += 1
            else:
                error = {
                    'type': 'processing_error',
                    'chunk_id': chunk_id(chunk, index),
                    'error': result.get('error'),
                    'attempt': result.get('attempt'),
                    'index': index,
                }
                aggregate['errors'].append(error)
                aggregate['failed_chunks'] += 1
                with self._lock:
                    self._errors.append(error)

    def _process_chunk_with_retry(
        self,
        chunk: Dict[str, Any],
        processor_fn: ProcessorFn,
        options: Dict[str, Any],
        index: int
    ) -> Dict[str, Any]:
        retry_attempts = options['retry_attempts']
        backoff = options['retry_backoff']
        identifier = chunk_id(chunk, index)
        attempt = 0

        while True:
            attempt += 1
            try:
                raw = processor_fn(chunk, options)
            except Exception as e:
                if attempt < retry_attempts and not self._cancelled.is_set():
                    self.logger.debug(COMPONENT, "chunk_retry", chunk_id=identifier, attempt=attempt, error=str(e))
                    if backoff:
                        time.sleep(backoff ** attempt)
                    continue

                self.logger.warn(COMPONENT, "chunk_failed", chunk_id=identifier, attempt=attempt, error=str(e))
                return {'success': False, 'error': str(e), 'attempt': attempt, 'chunk_id': identifier}

            result = dict(raw) if isinstance(raw, Mapping) else {'result': raw}
            result.setdefault('success', True)
            result['attempt'] = attempt
            result.setdefault('chunk_id', identifier)
            return result

    def _wait_for_resources(self, usage: Dict[str, List[float]], identifier: Hashable) -> None:
        waits = 0
        while True:
            snapshot = self.resource_monitor.snapshot()
            for gauge in ('memory', 'cpu', 'disk'):
                usage[gauge].append(snapshot[gauge])

            exceeded = snapshot['memory'] > self.config.memory_limit or snapshot['cpu'] > self.config.cpu_limit
            if not exceeded:
                return
            if waits >= self.config.max_resource_waits or self._cancelled.is_set():
                self.logger.warn(COMPONENT, "resource_limits_exceeded_proceeding", chunk_id=identifier,
                                 memory=snapshot['memory'], cpu=snapshot['cpu'], waits=waits)
                return

            self.logger.debug(COMPONENT, "waiting_for_resources", chunk_id=identifier,
                              memory=snapshot['memory'], cpu=snapshot['cpu'])
            time.sleep(max(1.0, self.config.resource_wait_interval))
            waits += 1

    # =========================================================================
    # Aggregation
    # =========================================================================

    def _prepare_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Copy per-call options with retry settings resolved against config.

        Raises:
            ValueError: If retry_attempts or retry_backoff is not a
                non-negative number
        """
        prepared = dict(options or {})

        attempts = prepared.get('retry_attempts')
        if attempts is None:
            attempts = self.config.retry_attempts
        backoff = prepared.get('retry_backoff')
        if backoff is None:
            backoff = self.config.retry_backoff

        try:
            attempts = int(attempts)
            backoff = float(backoff)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid retry options: {e}") from e
        if attempts < 0 or backoff < 0:
            raise ValueError("retry_attempts and retry_backoff must be >= 0")

        prepared['retry_attempts'] = max(1, attempts)
        prepared['retry_backoff'] = backoff
        return prepared

    def _new_aggregate(self, chunks: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            'total_chunks': len(chunks),
            'processed_chunks': 0,
            'failed_chunks': 0,
            'start_time': datetime.now(),
            'end_time': None,
            'duration': None,
            'results': [],
            'errors': [],
            'statistics': {},
        }

    def _finalize(self, aggregate: Dict[str, Any]) -> None:
        aggregate['end_time'] = datetime.now()
        aggregate['duration'] = (aggregate['end_time'] - aggregate['start_time']).total_seconds()
        aggregate['statistics'] = calculate_statistics(aggregate)
        self.logger.info(COMPONENT, "processing_complete", processed=aggregate['processed_chunks'],
                         failed=aggregate['failed_chunks'], duration=round(aggregate['duration'], 3))


def calculate_statistics(aggregate: Dict[str, Any]) -> Dict[str, Any]:
    """
    Summary statistics for an aggregate's results.

    Returns an empty dict when there are no successful results.
    """
    results = aggregate.get('results') or []
    if not results:
        return {}

    durations = [result.get('duration') or 0 for result in results]
    memory = [result.get('memory_usage') or 0 for result in results]
    processed = aggregate.get('processed_chunks', 0)
    total = aggregate.get('total_chunks') or 0
    duration = aggregate.get('duration') or 0

    return {
        'average_duration': sum(durations) / len(durations),
        'min_duration': min(durations),
        'max_duration': max(durations),
        'total_duration': sum(durations),
        'average_memory': sum(memory) / len(memory),
        'success_rate': processed / total * 100 if total else 0.0,
        'throughput': processed / duration if duration > 0 else 0,
    }
