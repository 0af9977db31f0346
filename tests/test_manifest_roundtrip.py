from pathlib import Path
import tempfile
import unittest

from src.contracts.errors import ContractError
from src.contracts.manifest import Manifest, should_skip_step
from src.pipeline.io import persist_manifest


class ManifestRoundtripTests(unittest.TestCase):
    def test_manifest_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "manifest.json"

            m = Manifest(version="1", run_id="abc", input_sha256="1" * 64)
            m.artifacts.input_path = "in.mp3"
            m.artifacts.input_sha256 = "1" * 64
            m.ensure_step("upload").status = "success"
            m.artifacts.staged_object_name = "1111/in.mp3"
            m.artifacts.upload_session = {"id": "s1", "bytes_acknowledged": 5}
            m.artifacts.segment_result_paths = ["segments/segment_0000.json"]
            persist_manifest(m, manifest_path)

            m2 = Manifest.read_json(manifest_path)
            self.assertIsNotNone(m2.created_at_s)
            self.assertEqual(m2.version, "1")
            self.assertEqual(m2.run_id, "abc")
            self.assertEqual(m2.artifacts.input_path, "in.mp3")
            self.assertEqual(m2.steps["upload"].status, "success")
            self.assertEqual(m2.artifacts.upload_session, {"id": "s1", "bytes_acknowledged": 5})
            self.assertEqual(m2.artifacts.segment_result_paths, ["segments/segment_0000.json"])
            self.assertTrue(should_skip_step(m2, "upload", require_artifact_paths=["staged_object_name"]))

    def test_read_json_rejects_corrupt_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "manifest.json"
            manifest_path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ContractError):
                Manifest.read_json(manifest_path)


if __name__ == "__main__":
    unittest.main()
