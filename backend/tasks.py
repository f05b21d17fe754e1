from typing import Callable, Optional


class TaskDispatcher:
    """Runs side effects outside the request/response path.

    ``spawn`` starts a callable in the background (Flask-SocketIO's
    ``start_background_task`` in the app). Without it the task runs inline,
    which the tests rely on. Either way a failing task is logged and dropped.
    """

    def __init__(self, logger, spawn: Optional[Callable] = None):
        self.logger = logger
        self.spawn = spawn

    def submit(self, description: str, func: Callable, *args, **kwargs):
        def run():
            try:
                func(*args, **kwargs)
            except Exception as exc:
                self.logger.warning("Background task '%s' failed: %s", description, exc)

        if self.spawn is None:
            run()
            return
        try:
            self.spawn(run)
        except Exception as exc:
            self.logger.warning("Unable to start background task '%s': %s", description, exc)

    def notify(self, description: str, send: Callable, *args):
        """Dispatch a notifier call whose ``(sent, error)`` outcome is only logged."""

        def deliver():
            sent, error = send(*args)
            if not sent:
                self.logger.warning("%s not sent: %s", description, error)

        self.submit(description, deliver)
