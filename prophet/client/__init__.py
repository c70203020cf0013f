from prophet.client.runner import JobRunner
from prophet.client.sse import ServerSentEvent, aiter_sse, iter_sse
from prophet.client.state import JobRunnerState, RunnerStatus, reduce
from prophet.client.watcher import ActiveJobWatcher

__all__ = [
    "ActiveJobWatcher",
    "JobRunner",
    "JobRunnerState",
    "RunnerStatus",
    "ServerSentEvent",
    "aiter_sse",
    "iter_sse",
    "reduce",
]
