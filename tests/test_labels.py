import tempfile
import unittest
from pathlib import Path

from yolov5_npu.errors import InvalidClassId
from yolov5_npu.labels import LabelTable, load_label_table


class TestLabelTable(unittest.TestCase):
    def _write(self, text: str) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "labels.txt"
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_ok(self) -> None:
        labels = load_label_table(self._write("person\nbicycle\ncar\n"))
        self.assertEqual(len(labels), 3)
        self.assertEqual(labels.name(0), "person")
        self.assertEqual(labels.name(2), "car")
        self.assertEqual(labels.as_dict(), {0: "person", 1: "bicycle", 2: "car"})

    def test_trailing_blank_lines_and_whitespace(self) -> None:
        labels = load_label_table(self._write("person  \r\ntraffic light\n\n\n"))
        self.assertEqual(list(labels), ["person", "traffic light"])

    def test_blank_line_in_the_middle_keeps_ids(self) -> None:
        labels = load_label_table(self._write("a\n\nc\n"))
        self.assertEqual(len(labels), 3)
        self.assertEqual(labels.name(2), "c")

    def test_out_of_range(self) -> None:
        labels = LabelTable(["a", "b"])
        self.assertTrue(labels.contains(1))
        self.assertFalse(labels.contains(2))
        self.assertFalse(labels.contains(-1))
        with self.assertRaises(InvalidClassId):
            labels.name(2)
        with self.assertRaises(IndexError):
            labels.name(-1)

    def test_empty_file_rejected(self) -> None:
        with self.assertRaises(ValueError):
            load_label_table(self._write("\n\n"))

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_label_table(Path(tempfile.gettempdir()) / "definitely_missing_labels.txt")


if __name__ == "__main__":
    unittest.main()
