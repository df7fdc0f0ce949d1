import unittest
from unittest import mock

from attendee_mirror.models import AppConfig
from attendee_mirror.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def test_failed_pass_does_not_escape(self) -> None:
        engine = mock.Mock()
        engine.run_once.side_effect = RuntimeError("boom")
        scheduler = SyncScheduler(engine, mock.Mock())

        scheduler._run("scheduled")

        engine.run_once.assert_called_once_with(trigger="scheduled")

    def test_manual_trigger_runs_pass(self) -> None:
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict({"sync": {"interval_seconds": 3600}})
        engine = mock.Mock()
        scheduler = SyncScheduler(engine, config_manager)

        def stop_after_manual(trigger: str) -> None:
            if trigger == "manual":
                scheduler._stop_event.set()

        engine.run_once.side_effect = stop_after_manual
        scheduler.trigger_manual()
        scheduler._loop()

        triggers = [call.kwargs["trigger"] for call in engine.run_once.call_args_list]
        self.assertEqual(triggers, ["startup", "manual"])


if __name__ == "__main__":
    unittest.main()
