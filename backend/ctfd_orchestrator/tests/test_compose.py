import os
import stat
import tempfile
from unittest import TestCase

import yaml

from ctfd_orchestrator.compose import MANIFEST_HEADER, build_manifest, manifest_digest, render_manifest, write_manifest
from ctfd_orchestrator.config import DeploymentConfig


class ComposeManifestTests(TestCase):
    def setUp(self):
        self.config = DeploymentConfig(secret_key="k" * 64, db_password="dbpw", data_root="/srv/ctfd/")

    def test_render_is_deterministic(self):
        first = render_manifest(self.config)
        second = render_manifest(DeploymentConfig(secret_key="k" * 64, db_password="dbpw", data_root="/srv/ctfd/"))
        self.assertEqual(first, second)
        self.assertEqual(manifest_digest(first), manifest_digest(second))
        self.assertTrue(first.startswith(MANIFEST_HEADER))

    def test_manifest_wires_app_to_database(self):
        manifest = yaml.safe_load(render_manifest(self.config))
        ctfd = manifest["services"]["ctfd"]
        db = manifest["services"]["db"]
        self.assertEqual(ctfd["image"], "ctfd/ctfd:3.7.4")
        self.assertEqual(ctfd["ports"], ["80:8000"])
        self.assertEqual(ctfd["depends_on"], ["db"])
        self.assertEqual(ctfd["environment"]["DATABASE_URL"], "mysql+pymysql://ctfd:dbpw@db/ctfd")
        self.assertEqual(ctfd["environment"]["SECRET_KEY"], "k" * 64)
        self.assertIn("/srv/ctfd/uploads:/var/uploads", ctfd["volumes"])
        self.assertEqual(db["environment"]["MARIADB_PASSWORD"], "dbpw")
        self.assertIn("/srv/ctfd/mysql:/var/lib/mysql", db["volumes"])

    def test_secret_key_is_required(self):
        with self.assertRaises(ValueError):
            build_manifest(DeploymentConfig())

    def test_write_is_private_and_returns_digest(self):
        content = render_manifest(self.config)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "nested", "docker-compose.yml")
            digest = write_manifest(content, path)
            with open(path, "r", encoding="utf-8") as handle:
                self.assertEqual(handle.read(), content)
            self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o600)
            self.assertEqual(os.listdir(os.path.dirname(path)), ["docker-compose.yml"])
        self.assertEqual(digest, manifest_digest(content))
