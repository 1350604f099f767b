import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import toolchain


class TestBinaryResolution(unittest.TestCase):
    def test_explicit_engine_path_wins(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            binary = Path(temp_dir) / "waifu2x-converter-cpp"
            binary.touch()
            with mock.patch("toolchain.shutil.which") as which_mock:
                resolved = toolchain.resolve_engine_binary("waifu2x", str(binary))
        self.assertEqual(resolved, binary.resolve())
        which_mock.assert_not_called()

    def test_explicit_engine_path_must_exist(self):
        with self.assertRaises(FileNotFoundError):
            toolchain.resolve_engine_binary("waifu2x", "/nonexistent/waifu2x-converter-cpp")

    def test_engine_found_on_path(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            binary = Path(temp_dir) / "realesrgan-ncnn-vulkan"
            binary.touch()

            def fake_which(command: str):
                if command == "realesrgan-ncnn-vulkan":
                    return str(binary)
                return None

            with mock.patch("toolchain.platform.system", return_value="Linux"):
                with mock.patch("toolchain.shutil.which", side_effect=fake_which):
                    resolved = toolchain.resolve_engine_binary("realesrgan", None)
        self.assertEqual(resolved, binary.resolve())

    def test_missing_engine_names_the_flag(self):
        with mock.patch("toolchain.shutil.which", return_value=None):
            with self.assertRaises(FileNotFoundError) as ctx:
                toolchain.resolve_engine_binary("waifu2x", None)
        self.assertIn("--engine-path", str(ctx.exception))

    def test_windows_binary_name(self):
        with mock.patch("toolchain.platform.system", return_value="Windows"):
            self.assertEqual(
                toolchain.get_engine_binary_name("waifu2x"),
                "waifu2x-converter-cpp.exe",
            )

    def test_unknown_engine(self):
        with self.assertRaises(ValueError):
            toolchain.get_engine_binary_name("topaz")

    def test_models_beside_binary(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "models").mkdir()
            resolved = toolchain.resolve_model_path(None, root / "realesrgan-ncnn-vulkan")
        self.assertEqual(resolved, (root / "models").resolve())

    def test_models_under_prefix_share(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            prefix = Path(temp_dir)
            models = prefix / "share" / "realesrgan-ncnn-vulkan" / "models"
            models.mkdir(parents=True)
            resolved = toolchain.resolve_model_path(
                None, prefix / "bin" / "realesrgan-ncnn-vulkan"
            )
        self.assertEqual(resolved, models.resolve())

    def test_toolchain_requires_ffmpeg(self):
        def fake_which(command: str):
            return None if command == "ffprobe" else f"/usr/bin/{command}"

        with mock.patch("toolchain.shutil.which", side_effect=fake_which):
            with self.assertRaises(FileNotFoundError) as ctx:
                toolchain.resolve_toolchain("waifu2x")
        self.assertIn("ffprobe", str(ctx.exception))
        self.assertNotIn("ffmpeg,", str(ctx.exception))

    def test_toolchain_without_notifier(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            binary = Path(temp_dir) / "waifu2x-converter-cpp"
            binary.touch()
            with mock.patch("toolchain.shutil.which", side_effect=lambda c: f"/usr/bin/{c}"):
                tools = toolchain.resolve_toolchain(
                    "waifu2x", engine_path=str(binary), use_notifier=False
                )
        self.assertEqual(tools.ffmpeg, "/usr/bin/ffmpeg")
        self.assertEqual(tools.nice, "/usr/bin/nice")
        self.assertIsNone(tools.notifier)
        self.assertIsNone(tools.model_path)


class TestNotify(unittest.TestCase):
    def test_no_notifier_is_a_no_op(self):
        with mock.patch("toolchain.run_subprocess") as run_mock:
            self.assertFalse(toolchain.notify(None, "title", "body"))
        run_mock.assert_not_called()

    def test_sends_urgency(self):
        completed = subprocess.CompletedProcess([], 0, "", "")
        with mock.patch("toolchain.run_subprocess", return_value=completed) as run_mock:
            self.assertTrue(
                toolchain.notify("/usr/bin/notify-send", "Done", "ok", urgency="critical")
            )
        self.assertEqual(
            run_mock.call_args.args[0],
            ["/usr/bin/notify-send", "-u", "critical", "Done", "ok"],
        )

    def test_failures_are_swallowed(self):
        with mock.patch("toolchain.run_subprocess", side_effect=OSError("no dbus")):
            self.assertFalse(toolchain.notify("/usr/bin/notify-send", "Done", "ok"))


class TestBackgroundTask(unittest.TestCase):
    def test_liveness_follows_poll(self):
        process = mock.Mock()
        process.poll.return_value = None
        task = toolchain.BackgroundTask(process)
        self.assertTrue(task.is_alive())
        process.poll.return_value = 0
        self.assertFalse(task.is_alive())

    def test_terminate_escalates_to_kill(self):
        process = mock.Mock()
        process.poll.return_value = None
        process.wait.side_effect = [subprocess.TimeoutExpired("engine", 5), -9]
        toolchain.BackgroundTask(process).terminate(grace_seconds=5)
        process.terminate.assert_called_once()
        process.kill.assert_called_once()

    def test_terminate_after_exit_is_a_no_op(self):
        process = mock.Mock()
        process.poll.return_value = 1
        toolchain.BackgroundTask(process).terminate()
        process.terminate.assert_not_called()


if __name__ == "__main__":
    unittest.main()
