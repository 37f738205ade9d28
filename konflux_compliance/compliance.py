"""
Compliance checks of a single Konflux component.

The checks work on already fetched data: the push and pull-request PipelineRun
definitions from the component's .tekton directory, and the GitHub check runs
of the head commit of the component's branch. Fetching is done by the scan pipeline.
"""

import csv
import fnmatch
import re
from dataclasses import astuple, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from konflux_compliance import constants, logutil

_LOGGER = logutil.get_logger(__name__)

ENABLED = "Enabled"
NOT_ENABLED = "Not Enabled"
NOT_APPLICABLE = "Not Applicable"

EC_COMPLIANT = "Compliant"
EC_NOT_COMPLIANT = "Not Compliant"
EC_BLANK = "EC_BLANK"
EC_CANCELED = "EC_CANCELED"
PUSH_FAILURE = "Push Failure"

PUSH_SUCCESSFUL = "Successful"
PUSH_FAILED = "Failed"

# A record holding any of these values needs attention (a rebuild or a JIRA issue)
FAILURE_VALUES = frozenset({
    "Failed",
    PUSH_FAILURE,
    "IMAGE_PULL_FAILURE",
    "INSPECTION_FAILURE",
    "DIGEST_FAILURE",
    NOT_ENABLED,
    EC_NOT_COMPLIANT,
})

CSV_HEADER = [
    "Konflux Component",
    "Scan Time",
    "Promoted Time",
    "Promoted Status",
    "Hermetic Builds",
    "Enterprise Contract",
    "Multiarch Support",
    "Push Status",
    "Push PipelineRun URL",
    "EC PipelineRun URL",
]

SCAN_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_PIPELINERUN_URL = re.compile(r'href="(https://konflux-ui[^"]*pipelinerun/[^"]*)"')


def scan_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime(SCAN_TIME_FORMAT)


def is_bundle_operator(component: str) -> bool:
    return component.startswith(constants.BUNDLE_OPERATOR_PREFIXES)


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _is_true(value: Any) -> bool:
    return value is True or value == "true"


def _find_param(params: Any, name: str) -> Optional[Dict]:
    if not isinstance(params, list):
        return None
    return next((p for p in params if isinstance(p, dict) and p.get("name") == name), None)


def get_param(definition: Optional[Dict], name: str, label: str = "") -> Any:
    """Look up a PipelineRun parameter.

    The value set in .spec.params is used; if there is none the default
    declared in .spec.pipelineSpec.params is used instead.
    """
    spec = (definition or {}).get("spec") or {}
    value = (_find_param(spec.get("params"), name) or {}).get("value")
    _LOGGER.debug("%s (%s): using .spec.params.value = %s", name, label, value)
    if _is_blank(value):
        pipeline_spec = spec.get("pipelineSpec") or {}
        value = (_find_param(pipeline_spec.get("params"), name) or {}).get("default")
        _LOGGER.debug("%s (%s): using .spec.pipelineSpec.params.default = %s", name, label, value)
    return value


def get_path_in_repo(definition: Optional[Dict], label: str = "") -> Optional[Dict]:
    """Return the pathInRepo parameter of the referenced pipeline, if any."""
    spec = (definition or {}).get("spec") or {}
    param = _find_param((spec.get("pipelineRef") or {}).get("params"), "pathInRepo")
    _LOGGER.debug("pathInRepo (%s): using .spec = %s", label, param)
    if not param:
        pipeline_ref = ((spec.get("pipelineSpec") or {}).get("pipelineRef") or {})
        param = _find_param(pipeline_ref.get("params"), "pathInRepo")
        _LOGGER.debug("pathInRepo (%s): using .spec.pipelineSpec fallback = %s", label, param)
    return param


def needs_vendor_directory(push: Optional[Dict], pull: Optional[Dict]) -> bool:
    """True if a build doesn't prefetch its dependencies, so only a vendor/ directory can make it hermetic."""
    return _is_blank(get_param(push, "prefetch-input", "push")) or _is_blank(get_param(pull, "prefetch-input", "pull"))


def check_hermetic_builds(push: Optional[Dict], pull: Optional[Dict], has_vendor: bool = False) -> str:
    """Check whether both pipelines of a component build hermetically.

    :param push: the <component>-push.yaml PipelineRun, or None if it doesn't exist
    :param pull: the <component>-pull-request.yaml PipelineRun, or None if it doesn't exist
    :param has_vendor: whether the repository has a vendor/ directory
    :return: "Enabled" or "Not Enabled"
    """
    hermetic = True

    if not get_path_in_repo(push, "push") or not get_path_in_repo(pull, "pull"):
        # pipelines not coming from a shared pipeline definition must ask for it explicitly
        if not (_is_true(get_param(push, "build-source-image", "push"))
                and _is_true(get_param(pull, "build-source-image", "pull"))):
            hermetic = False
        if not (_is_true(get_param(push, "hermetic", "push")) and _is_true(get_param(pull, "hermetic", "pull"))):
            hermetic = False

    if needs_vendor_directory(push, pull) and not has_vendor:
        hermetic = False

    return ENABLED if hermetic else NOT_ENABLED


def check_multiarch_support(push: Optional[Dict]) -> str:
    platforms = get_param(push, "build-platforms", "push")
    count = len(platforms) if isinstance(platforms, list) else 0
    return ENABLED if count == constants.MULTIARCH_PLATFORM_COUNT else NOT_ENABLED


def _pipelinerun_url(check_runs: List[Dict]) -> str:
    for run in check_runs:
        text = (run.get("output") or {}).get("text") or ""
        match = _PIPELINERUN_URL.search(text)
        if match:
            return match.group(1)
    return ""


def check_enterprise_contract(check_runs: List[Dict], component: str) -> Tuple[str, str]:
    """Evaluate the Enterprise Contract check runs of a component.

    :return: (status, EC PipelineRun URL)
    """
    pattern = f"*enterprise-contract*{component}"
    runs = [run for run in check_runs if fnmatch.fnmatchcase(run.get("name") or "", pattern)]
    conclusions = [run.get("conclusion") for run in runs if run.get("conclusion")]
    url = _pipelinerun_url(runs)
    _LOGGER.debug("EC conclusions=%s, ec_url=%s", conclusions, url)

    if not conclusions:
        status = EC_BLANK
    elif all(c == "success" for c in conclusions):
        status = EC_COMPLIANT
    elif all(c == "cancelled" for c in conclusions):
        status = EC_CANCELED
    else:
        status = EC_NOT_COMPLIANT
    return status, url


def check_component_on_push(check_runs: List[Dict], component: str) -> Tuple[str, str]:
    """Evaluate the on-push pipeline check run of a component.

    :return: ("Successful" or "Failed", PipelineRun details URL)
    """
    name = f"{constants.KONFLUX_GITHUB_APP_NAME} / {component}-on-push"
    runs = [run for run in check_runs if run.get("name") == name]
    conclusions = [run.get("conclusion") for run in runs if run.get("conclusion")]
    url = next((run["details_url"] for run in runs if run.get("details_url")), "")
    _LOGGER.debug("Push conclusions=%s, push_url=%s", conclusions, url)
    if conclusions and all(c == "success" for c in conclusions):
        return PUSH_SUCCESSFUL, url
    return PUSH_FAILED, url


def resolve_ec_status(ec_status: str, push_status: str) -> str:
    """A missing or cancelled EC result is blamed on the push pipeline if that failed."""
    if ec_status in (EC_BLANK, EC_CANCELED):
        return EC_NOT_COMPLIANT if push_status == PUSH_SUCCESSFUL else PUSH_FAILURE
    return ec_status


@dataclass
class ComplianceRecord:
    component: str
    scan_time: str
    promoted_time: str
    promoted_status: str
    hermetic_builds: str
    enterprise_contract: str
    multiarch_support: str
    push_status: str
    push_pipelinerun_url: str = ""
    ec_pipelinerun_url: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "ComplianceRecord":
        values = [(row.get(column) or "").strip() for column in CSV_HEADER]
        return cls(*values)

    def to_row(self) -> List[str]:
        return list(astuple(self))

    def as_dict(self) -> Dict[str, str]:
        return dict(zip(CSV_HEADER, self.to_row()))

    def failures(self) -> Dict[str, str]:
        """Columns holding a failure value, in CSV order."""
        checked = zip(CSV_HEADER[2:], self.to_row()[2:])
        return {column: value for column, value in checked if value in FAILURE_VALUES}

    @property
    def needs_retrigger(self) -> bool:
        return bool(self.failures())


class ComplianceReport:
    """The CSV file a scan writes one row per component to."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def start(self):
        """Truncate the report and write the header."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", newline="") as f:
            csv.writer(f).writerow(CSV_HEADER)

    def append(self, record: ComplianceRecord):
        with self.path.open("a", newline="") as f:
            csv.writer(f).writerow(record.to_row())
            f.flush()


def read_compliance_csv(path: Union[str, Path]) -> List[ComplianceRecord]:
    with Path(path).open(newline="") as f:
        return [ComplianceRecord.from_row(row) for row in csv.DictReader(f) if row.get("Konflux Component")]
