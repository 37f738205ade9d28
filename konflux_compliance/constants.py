GITHUB_API_URL = "https://api.github.com"
GITHUB_RAW_URL = "https://raw.githubusercontent.com"
GITHUB_API_VERSION = "2022-11-28"

# Name of the GitHub App that reports Konflux pipeline results as check suites
KONFLUX_GITHUB_APP_NAME = "Red Hat Konflux"

# Tenant namespace that owns the ACM/MCE components
KONFLUX_NAMESPACE = "crt-redhat-acm-tenant"

KONFLUX_API_VERSION = "appstudio.redhat.com/v1alpha1"
KIND_COMPONENT = "Component"

# Setting this annotation on a Component makes the build service trigger a new PaC build
REBUILD_ANNOTATION = "build.appstudio.openshift.io/request"
REBUILD_ANNOTATION_VALUE = "trigger-pac-build"

BUNDLE_OPERATOR_PREFIXES = ("mce-operator-bundle", "acm-operator-bundle")

# Number of platforms a component must build for to count as multiarch
MULTIARCH_PLATFORM_COUNT = 4

# GitHub API retry policy
GITHUB_MAX_RETRIES = 3
GITHUB_RETRY_DELAY = 2  # seconds, doubled after every attempt

# A rate limit with fewer remaining requests than this is considered exhausted
RATE_LIMIT_EXHAUSTED_THRESHOLD = 10
RATE_LIMIT_LOW_THRESHOLD = 500
RATE_LIMIT_CRITICAL_THRESHOLD = 100
RATE_LIMIT_HIGH_USAGE_PERCENT = 80
# Rough number of GitHub API calls made by a full compliance scan
API_CALLS_PER_SCAN = 150

# Seconds to wait between components to stay below GitHub API rate limits
COMPONENT_DELAY = 5

# GitHub App tokens
GITHUB_APP_JWT_BACKDATE = 60  # seconds, to account for clock drift
GITHUB_APP_JWT_LIFETIME = 540  # seconds, GitHub allows at most 10 minutes
GITHUB_APP_IAT_LIFETIME = 3600
GITHUB_APP_IAT_REFRESH_MARGIN = 300

AUTHORIZATION_FILE = "authorization.txt"

DEFAULT_CONFIG_PATH = "~/.config/konflux-compliance.toml"
DEFAULT_SQUAD_CONFIG = "component-squad.yaml"

JIRA_SERVER_URL = "https://issues.redhat.com"
JIRA_PROJECT = "ACM"
JIRA_ISSUE_TYPE = "Bug"
JIRA_CLOSE_TRANSITION = "Closed"
JIRA_COMPLIANCE_LABEL = "konflux-compliance"
