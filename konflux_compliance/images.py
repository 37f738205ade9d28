import json
import platform
import re
from typing import List, Tuple

from konflux_compliance import exectools, logutil
from konflux_compliance.konflux import KonfluxComponent

_LOGGER = logutil.get_logger(__name__)

IMAGE_PULL_FAILURE = "IMAGE_PULL_FAILURE"
INSPECTION_FAILURE = "INSPECTION_FAILURE"
DIGEST_FAILURE = "DIGEST_FAILURE"

PROMOTED_SUCCESSFUL = "Successful"
PROMOTED_FAILED = "Failed"

_DIGEST_PATTERN = re.compile(r"sha256:[a-f0-9]{64}$")


def skopeo_platform_args(system: str = None, machine: str = None) -> List[str]:
    """Promoted images are linux/amd64; skopeo on Apple Silicon must be told so."""
    system = system or platform.system()
    machine = machine or platform.machine()
    if system == "Darwin" and machine == "arm64":
        return ["--override-arch", "amd64", "--override-os", "linux"]
    return []


async def inspect_image(pullspec: str) -> dict:
    """Run `skopeo inspect` on an image and return the parsed output.

    :raises ChildProcessError: if skopeo fails
    """
    cmd = ["skopeo", *skopeo_platform_args(), "inspect", f"docker://{pullspec}"]
    _, out, _ = await exectools.cmd_gather_async(cmd)
    return json.loads(out)


async def check_promoted(component: KonfluxComponent) -> Tuple[str, str]:
    """Check the last promoted image of a Component.

    :return: (promoted time or failure token, "Successful" or "Failed")
    """
    image = component.last_promoted_image
    if not image:
        return IMAGE_PULL_FAILURE, PROMOTED_FAILED
    if not _DIGEST_PATTERN.search(image):
        return DIGEST_FAILURE, PROMOTED_FAILED
    try:
        info = await inspect_image(image)
    except (ChildProcessError, ValueError) as e:
        _LOGGER.debug("Failed to inspect %s: %s", image, e)
        return INSPECTION_FAILURE, PROMOTED_FAILED
    build_date = ((info or {}).get("Labels") or {}).get("build-date") or ""
    if build_date.endswith("Z"):
        build_date = build_date[:-1]
    return build_date, PROMOTED_SUCCESSFUL
