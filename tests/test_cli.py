import contextlib
import io
import json
import unittest

from tcpgate.cli import build_parser, main


class TestCli(unittest.TestCase):
    def test_json_prints_component_doc(self) -> None:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = main(["--json"])

        self.assertEqual(code, 0)
        doc = json.loads(out.getvalue())
        self.assertTrue(doc["elementary"])
        self.assertEqual([p["name"] for p in doc["inports"]], ["options", "in"])
        self.assertEqual([p["name"] for p in doc["outports"]], ["out"])

    def test_missing_ports_exit_with_usage(self) -> None:
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            code = main(["--port.options", "tcp://127.0.0.1:5000"])

        self.assertEqual(code, 1)
        self.assertIn("usage:", err.getvalue())

    def test_unbindable_port_exits_with_error(self) -> None:
        with self.assertLogs("tcpgate.cli", level="ERROR") as logs:
            code = main(
                [
                    "--port.options", "inproc://cli-options",
                    "--port.in", "bogus://nowhere",
                    "--port.out", "inproc://cli-out",
                ]
            )

        self.assertEqual(code, 1)
        self.assertTrue(any("tcpgate failed" in line for line in logs.output))

    def test_port_flags(self) -> None:
        args = build_parser().parse_args(
            ["--port.options", "tcp://a:1", "--port.in", "tcp://a:2", "--port.out", "tcp://a:3", "--debug"]
        )
        self.assertEqual(args.options_endpoint, "tcp://a:1")
        self.assertEqual(args.in_endpoint, "tcp://a:2")
        self.assertEqual(args.out_endpoint, "tcp://a:3")
        self.assertTrue(args.debug)


if __name__ == "__main__":
    unittest.main()
