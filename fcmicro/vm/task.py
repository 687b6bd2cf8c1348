"""Synchronized creation, exec, deletion and IO handling of tasks."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Tuple

from fcmicro.vm.fifo import Logger
from fcmicro.vm.ioproxy import IOProxy

_WATCH_STEP = 0.05


class TaskError(Exception):
    """A task or exec cannot be created, found or deleted."""


class ProcessExistsError(TaskError):
    """A process with the same task and exec id is already managed."""


@dataclass(frozen=True)
class CreateTaskRequest:
    """Request to create the initial process of a task."""

    id: str


@dataclass(frozen=True)
class ExecProcessRequest:
    """Request to exec an additional process in an existing task."""

    id: str
    exec_id: str


@dataclass(frozen=True)
class DeleteRequest:
    """Request to delete a task (empty exec id) or one of its execs."""

    id: str
    exec_id: str = ""


@dataclass(frozen=True)
class WaitRequest:
    """Request to wait for a task or exec to exit."""

    id: str
    exec_id: str = ""


class TaskService(Protocol):
    """The service that actually runs tasks."""

    def create(self, request: CreateTaskRequest) -> Any: ...

    def exec(self, request: ExecProcessRequest) -> Any: ...

    def delete(self, request: DeleteRequest) -> Any: ...

    def wait(self, request: WaitRequest) -> Any: ...


def _with_fields(logger: Logger, **fields: Any) -> logging.LoggerAdapter:
    if isinstance(logger, logging.LoggerAdapter):
        extra = dict(logger.extra or {})
        extra.update(fields)
        return logging.LoggerAdapter(logger.logger, extra)
    return logging.LoggerAdapter(logger, dict(fields))


def _failed(future: Future) -> bool:
    return future.cancelled() or future.exception() is not None


@dataclass(eq=False)
class VMProc:
    """A task or exec process managed by a TaskManager."""

    task_id: str
    exec_id: str
    logger: Logger
    exited: threading.Event = field(default_factory=threading.Event)
    io_copy_done: Optional[Future] = None
    proxy: Optional[IOProxy] = None

    def cancel(self) -> None:
        """Mark the process as no longer running."""
        self.exited.set()


class TaskManager:
    """Keeps creation, deletion and IO of tasks and execs in step.

    Once ``shim_done`` is set, every managed process is treated as exited.
    """

    def __init__(
        self,
        logger: Optional[Logger] = None,
        shim_done: Optional[threading.Event] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, dict[str, VMProc]] = {}
        self._is_shutdown = False
        self._shim_done = shim_done
        self._logger: Logger = logger if logger is not None else logging.getLogger(__name__)

    def _link_to_shim(self, proc: VMProc) -> None:
        shim_done = self._shim_done
        if shim_done is None:
            return

        def watch() -> None:
            while not proc.exited.wait(_WATCH_STEP):
                if shim_done.is_set():
                    proc.cancel()
                    return

        threading.Thread(target=watch, daemon=True).start()

    def _new_proc(self, task_id: str, exec_id: str) -> VMProc:
        with self._lock:
            if self._is_shutdown:
                raise TaskError(
                    f"cannot create new exec {exec_id!r} in task {task_id!r} after shutdown"
                )
            execs = self._tasks.get(task_id)
            if execs is None:
                if exec_id != "":
                    raise TaskError(
                        f"cannot add exec {exec_id!r} to non-existent task {task_id!r}"
                    )
                execs = self._tasks[task_id] = {}
            if exec_id in execs:
                raise ProcessExistsError(f"exec {exec_id!r} already exists")

            proc = VMProc(
                task_id=task_id,
                exec_id=exec_id,
                logger=_with_fields(self._logger, TaskID=task_id, ExecID=exec_id),
            )
            execs[exec_id] = proc
        self._link_to_shim(proc)
        return proc

    def _delete_proc(self, task_id: str, exec_id: str) -> VMProc:
        with self._lock:
            execs = self._tasks.get(task_id)
            if execs is None:
                raise TaskError(
                    f"cannot delete exec {exec_id!r} from non-existent task {task_id!r}"
                )
            proc = execs.pop(exec_id, None)
            if proc is None:
                raise TaskError(
                    f"cannot delete non-existent exec {exec_id!r} from task {task_id!r}"
                )
            if not execs:
                del self._tasks[task_id]
            return proc

    def _find_proc(self, task_id: str, exec_id: str) -> VMProc:
        """Look up a process; the caller must hold the lock."""
        execs = self._tasks.get(task_id)
        if execs is None:
            raise TaskError(f"cannot find exec {exec_id!r} from non-existent task {task_id!r}")
        proc = execs.get(exec_id)
        if proc is None:
            raise TaskError(f"cannot find non-existent exec {exec_id!r} from task {task_id!r}")
        if proc.proxy is None:
            raise TaskError(
                f"exec {exec_id!r} and task {task_id!r} are present, but no proxy"
            )
        return proc

    def shutdown_if_empty(self) -> bool:
        """Refuse new tasks from now on if none are managed; return whether that happened."""
        with self._lock:
            if not self._tasks:
                self._is_shutdown = True
                return True
            return False

    def _start_proc(
        self,
        task_id: str,
        exec_id: str,
        io_proxy: IOProxy,
        call: Callable[[], Any],
    ) -> Tuple[VMProc, Any, Future]:
        proc = self._new_proc(task_id, exec_id)
        proc.proxy = io_proxy
        try:
            # Start IO setup without blocking so the service call can complete it.
            init_done, copy_done = io_proxy.start(proc)
            proc.io_copy_done = copy_done
            response = call()
            init_done.result()
        except BaseException:
            proc.cancel()
            try:
                self._delete_proc(task_id, exec_id)
            except TaskError:
                pass
            raise
        return proc, response, copy_done

    def _monitor(self, proc: VMProc, task_service: TaskService, copy_done: Future) -> None:
        threading.Thread(
            target=self._monitor_exit, args=(proc, task_service), daemon=True
        ).start()
        copy_done.add_done_callback(lambda _: _close_proxy(proc))

    def create_task(
        self,
        request: CreateTaskRequest,
        task_service: TaskService,
        io_proxy: IOProxy,
    ) -> Any:
        """Create a task through ``task_service`` and proxy its IO.

        Raises TaskError after shutdown; service and IO setup errors propagate.
        """
        proc, response, copy_done = self._start_proc(
            request.id, "", io_proxy, lambda: task_service.create(request)
        )
        proc.logger.info(
            "successfully created task (pid_in_vm=%s)", getattr(response, "pid", None)
        )
        self._monitor(proc, task_service, copy_done)
        return response

    def exec_process(
        self,
        request: ExecProcessRequest,
        task_service: TaskService,
        io_proxy: IOProxy,
    ) -> Any:
        """Exec a process in a managed task and proxy its IO."""
        proc, response, copy_done = self._start_proc(
            request.id, request.exec_id, io_proxy, lambda: task_service.exec(request)
        )
        self._monitor(proc, task_service, copy_done)
        return response

    def delete_process(self, request: DeleteRequest, task_service: TaskService) -> Any:
        """Delete a task or exec, blocking until its IO has been flushed."""
        response = task_service.delete(request)
        proc = self._delete_proc(request.id, request.exec_id)
        # IO errors are already logged by the proxy; only completion matters here.
        if proc.io_copy_done is not None:
            wait_futures([proc.io_copy_done])
        return response

    def _monitor_exit(self, proc: VMProc, task_service: TaskService) -> None:
        try:
            response = task_service.wait(WaitRequest(id=proc.task_id, exec_id=proc.exec_id))
        except CancelledError:
            proc.cancel()
            return
        except Exception as err:  # noqa: BLE001 - logged, the process is gone either way
            proc.cancel()
            proc.logger.error("error waiting for exit: %s", err)
            return
        proc.cancel()
        proc.logger.info(
            "exited (exit_status=%s, exited_at=%s)",
            getattr(response, "exit_status", None),
            getattr(response, "exited_at", None),
        )

    def is_proxy_open(self, task_id: str, exec_id: str) -> bool:
        """Whether the IO proxy of the given task or exec is still open."""
        with self._lock:
            proc = self._find_proc(task_id, exec_id)
            return proc.proxy.is_open()

    def attach_io(self, task_id: str, exec_id: str, proxy: IOProxy) -> None:
        """Attach ``proxy`` to a managed task or exec and start it."""
        with self._lock:
            proc = self._find_proc(task_id, exec_id)
            init_done, copy_done = proxy.start(proc)
            proc.proxy = proxy

        def on_init(future: Future) -> None:
            if _failed(future):
                proc.logger.error("failed to initialize an io proxy")
                proxy.close()

        init_done.add_done_callback(on_init)
        copy_done.add_done_callback(lambda _: _close_proxy(proc))


def _close_proxy(proc: VMProc) -> None:
    if proc.proxy is not None:
        proc.proxy.close()
    proc.logger.debug("closed proxy")