import json
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, patch

from konflux_compliance import images
from konflux_compliance.konflux import KonfluxComponent

DIGEST = "sha256:" + "a" * 64


class TestSkopeoPlatformArgs(TestCase):
    def test_macos_arm64(self):
        self.assertEqual(images.skopeo_platform_args("Darwin", "arm64"),
                         ["--override-arch", "amd64", "--override-os", "linux"])

    def test_linux(self):
        self.assertEqual(images.skopeo_platform_args("Linux", "x86_64"), [])


class TestCheckPromoted(IsolatedAsyncioTestCase):
    async def test_no_image(self):
        result = await images.check_promoted(KonfluxComponent(name="console"))
        self.assertEqual(result, ("IMAGE_PULL_FAILURE", "Failed"))

    async def test_tag_instead_of_digest(self):
        component = KonfluxComponent(name="console", last_promoted_image="quay.io/acm/console:latest")
        self.assertEqual(await images.check_promoted(component), ("DIGEST_FAILURE", "Failed"))

    @patch("konflux_compliance.images.skopeo_platform_args", return_value=[])
    @patch("konflux_compliance.exectools.cmd_gather_async", new_callable=AsyncMock)
    async def test_inspection(self, cmd_gather_async, _):
        cmd_gather_async.return_value = (0, json.dumps({"Labels": {"build-date": "2025-01-02T03:04:05Z"}}), "")
        component = KonfluxComponent(name="console", last_promoted_image=f"quay.io/acm/console@{DIGEST}")
        self.assertEqual(await images.check_promoted(component), ("2025-01-02T03:04:05", "Successful"))
        cmd_gather_async.assert_awaited_once_with(
            ["skopeo", "inspect", f"docker://quay.io/acm/console@{DIGEST}"])

    @patch("konflux_compliance.exectools.cmd_gather_async", new_callable=AsyncMock)
    async def test_inspection_failure(self, cmd_gather_async):
        cmd_gather_async.side_effect = ChildProcessError("manifest unknown")
        component = KonfluxComponent(name="console", last_promoted_image=f"quay.io/acm/console@{DIGEST}")
        self.assertEqual(await images.check_promoted(component), ("INSPECTION_FAILURE", "Failed"))

    @patch("konflux_compliance.exectools.cmd_gather_async", new_callable=AsyncMock)
    async def test_missing_build_date(self, cmd_gather_async):
        cmd_gather_async.return_value = (0, json.dumps({"Labels": {}}), "")
        component = KonfluxComponent(name="console", last_promoted_image=f"quay.io/acm/console@{DIGEST}")
        self.assertEqual(await images.check_promoted(component), ("", "Successful"))
