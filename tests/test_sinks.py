import io
import json
import os
import tempfile
import threading
import unittest

import cwalk


def diagnostic(message, line=1, rule_id="naming-convention"):
    return cwalk.Diagnostic(
        rule_id=rule_id,
        severity="warning",
        message=message,
        location=cwalk.SourceLocation(file="src/a.c", line=line, column=6),
    )


class TextSinkTests(unittest.TestCase):
    def test_compiler_style_lines(self) -> None:
        stream = io.StringIO()
        sink = cwalk.TextSink(stream)
        sink.report(diagnostic("first", line=3))
        sink.report(diagnostic("second", line=9, rule_id="for-loop-iterator"))
        self.assertEqual(
            stream.getvalue().splitlines(),
            [
                "src/a.c:3:6: warning: first [naming-convention]",
                "src/a.c:9:6: warning: second [for-loop-iterator]",
            ],
        )


class JsonSinkTests(unittest.TestCase):
    def test_json_objects_keep_order_and_duplicates(self) -> None:
        stream = io.StringIO()
        sink = cwalk.JsonSink(stream=stream)
        for message in ["b", "a", "a"]:
            sink.report(diagnostic(message))
        sink.close()
        payload = json.loads(stream.getvalue())
        self.assertEqual([item["message"] for item in payload], ["b", "a", "a"])
        self.assertEqual(payload[0]["location"], {"file": "src/a.c", "line": 1, "column": 6})
        self.assertEqual(payload[0]["tool"], "cwalk")
        self.assertEqual(payload[0]["severity"], "warning")

    def test_json_written_to_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            out = os.path.join(tmp, "out.json")
            sink = cwalk.JsonSink(out=out)
            sink.close()
            with open(out, "r", encoding="utf-8") as handle:
                self.assertEqual(json.load(handle), [])

    def test_unwritable_file_is_a_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sink = cwalk.JsonSink(out=os.path.join(tmp, "missing", "out.json"))
            sink.report(diagnostic("a"))
            with self.assertRaises(cwalk.ConfigError):
                sink.close()


class LockedSinkTests(unittest.TestCase):
    def test_concurrent_reports_are_all_kept(self) -> None:
        inner = cwalk.CollectingSink()
        sink = cwalk.LockedSink(inner)

        def produce(worker):
            for index in range(200):
                sink.report(diagnostic(f"{worker}-{index}"))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(inner.diagnostics), 800)
        for worker in range(4):
            own = [d.message for d in inner.diagnostics if d.message.startswith(f"{worker}-")]
            self.assertEqual(own, [f"{worker}-{index}" for index in range(200)])


if __name__ == "__main__":
    unittest.main()
