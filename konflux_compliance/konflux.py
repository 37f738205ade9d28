import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, cast

from async_lru import alru_cache
from kubernetes import config
from kubernetes.client import ApiClient, Configuration, CoreV1Api
from kubernetes.dynamic import DynamicClient, exceptions, resource

from konflux_compliance import constants, exectools
from konflux_compliance.exceptions import KonfluxError

LOGGER = logging.getLogger(__name__)


def parse_git_url(url: str) -> Tuple[str, str]:
    """Return (org, repo) from the last two path segments of a git URL.

    >>> parse_git_url("https://github.com/stolostron/console.git")
    ('stolostron', 'console')
    """
    path = url.strip().rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = path.split("/")
    if len(parts) < 2 or not parts[-1] or not parts[-2]:
        raise ValueError(f"Can't determine the GitHub org and repo from '{url}'")
    return parts[-2], parts[-1]


@dataclass
class KonfluxComponent:
    name: str
    application: str = ""
    git_url: str = ""
    revision: str = ""
    last_promoted_image: str = ""

    @classmethod
    def from_manifest(cls, manifest: Dict) -> "KonfluxComponent":
        spec = manifest.get("spec") or {}
        git = (spec.get("source") or {}).get("git") or {}
        status = manifest.get("status") or {}
        return cls(
            name=manifest["metadata"]["name"],
            application=spec.get("application") or "",
            git_url=git.get("url") or "",
            revision=git.get("revision") or "",
            last_promoted_image=status.get("lastPromotedImage") or "",
        )

    @property
    def org(self) -> str:
        return parse_git_url(self.git_url)[0]

    @property
    def repo(self) -> str:
        return parse_git_url(self.git_url)[1]


class KonfluxClient:
    """
    KonfluxClient reads and annotates Component resources of a Konflux tenant namespace.
    """

    def __init__(
        self, default_namespace: str, config: Configuration, dry_run: bool = False, logger: logging.Logger = LOGGER
    ) -> None:
        self.api_client = ApiClient(configuration=config)
        self.dyn_client = DynamicClient(self.api_client)
        self.corev1_client = CoreV1Api(self.api_client)
        self.default_namespace = default_namespace
        self.dry_run = dry_run
        self._logger = logger
        # In case of a network outage, the client may hang indefinitely without raising any exception.
        # https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
        self.request_timeout = 60 * 5  # 5 minutes

    def verify_connection(self):
        try:
            self.corev1_client.get_api_resources(_request_timeout=self.request_timeout)
            self._logger.info("Successfully authenticated to the Kubernetes cluster.")
        except Exception as e:
            self._logger.error(f"Failed to authenticate to the Kubernetes cluster: {e}")
            raise

    @staticmethod
    def from_kubeconfig(
        default_namespace: str,
        config_file: Optional[str],
        context: Optional[str],
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> "KonfluxClient":
        """Create a KonfluxClient from a kubeconfig file.

        :param default_namespace: The default namespace.
        :param config_file: The path to the kubeconfig file. None uses KUBECONFIG or ~/.kube/config.
        :param context: The context to use.
        :param dry_run: Whether to run in dry-run mode.
        :param logger: The logger.
        :return: The KonfluxClient.
        """
        cfg = Configuration()
        config.load_kube_config(
            config_file=config_file, context=context, persist_config=False, client_configuration=cfg
        )
        return KonfluxClient(default_namespace=default_namespace, config=cfg, dry_run=dry_run, logger=logger or LOGGER)

    @staticmethod
    def from_token(
        endpoint: str,
        token: str,
        default_namespace: str,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> "KonfluxClient":
        """Create a KonfluxClient authenticating with a service account token.

        TLS verification is disabled since the cluster API is reached through its bare endpoint.
        """
        cfg = Configuration()
        cfg.host = endpoint
        cfg.api_key = {"authorization": f"Bearer {token}"}
        cfg.verify_ssl = False
        return KonfluxClient(default_namespace=default_namespace, config=cfg, dry_run=dry_run, logger=logger or LOGGER)

    @alru_cache
    async def _get_api(self, api_version: str, kind: str):
        """Get the API object for the given API version and kind.

        :param api_version: The API version.
        :param kind: The kind.
        :return: The API object.
        """
        api = await exectools.to_thread(
            self.dyn_client.resources.get,
            api_version=api_version,
            kind=kind,
        )
        return api

    async def verify_namespace(self, namespace: Optional[str] = None):
        """Make sure the Components of the tenant namespace can be read.

        :raises KonfluxError: if the namespace doesn't exist or isn't accessible
        """
        namespace = namespace or self.default_namespace
        api = await self._get_api(constants.KONFLUX_API_VERSION, constants.KIND_COMPONENT)
        try:
            await exectools.to_thread(api.get, namespace=namespace, limit=1, _request_timeout=self.request_timeout)
        except exceptions.DynamicApiError as e:
            raise KonfluxError(
                f"Namespace {namespace} is not accessible ({e.status}: {e.reason}). "
                f"Make sure you are logged in to the cluster hosting {namespace}."
            ) from e
        self._logger.info("Using Konflux namespace %s", namespace)

    async def _list_component_manifests(self, namespace: Optional[str] = None) -> List[Dict]:
        api = await self._get_api(constants.KONFLUX_API_VERSION, constants.KIND_COMPONENT)
        resources = await exectools.to_thread(
            api.get, namespace=namespace or self.default_namespace, _request_timeout=self.request_timeout
        )
        return cast(resource.ResourceInstance, resources).to_dict().get("items", [])

    async def list_components(self, application: str, namespace: Optional[str] = None) -> List[str]:
        """List the names of the Components that belong to an application.

        A Component belongs to the application if its name contains the application name
        or if its spec.application is the application.
        """
        names = set()
        for manifest in await self._list_component_manifests(namespace):
            name = manifest["metadata"]["name"]
            if application in name or (manifest.get("spec") or {}).get("application") == application:
                names.add(name)
        return sorted(names)

    async def get_component(self, name: str, namespace: Optional[str] = None) -> KonfluxComponent:
        api = await self._get_api(constants.KONFLUX_API_VERSION, constants.KIND_COMPONENT)
        try:
            obj = await exectools.to_thread(
                api.get, name=name, namespace=namespace or self.default_namespace,
                _request_timeout=self.request_timeout,
            )
        except exceptions.NotFoundError as e:
            raise KonfluxError(f"Component {name} not found") from e
        return KonfluxComponent.from_manifest(cast(resource.ResourceInstance, obj).to_dict())

    async def request_rebuild(self, name: str, namespace: Optional[str] = None):
        """Ask the build service to trigger a new PaC build of a Component."""
        namespace = namespace or self.default_namespace
        manifest = {
            "apiVersion": constants.KONFLUX_API_VERSION,
            "kind": constants.KIND_COMPONENT,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "annotations": {constants.REBUILD_ANNOTATION: constants.REBUILD_ANNOTATION_VALUE},
            },
        }
        api = await self._get_api(constants.KONFLUX_API_VERSION, constants.KIND_COMPONENT)
        if self.dry_run:
            self._logger.warning(
                f"[DRY RUN] Would have patched {constants.KONFLUX_API_VERSION}/{constants.KIND_COMPONENT} "
                f"{namespace}/{name} with {constants.REBUILD_ANNOTATION}={constants.REBUILD_ANNOTATION_VALUE}"
            )
            return
        self._logger.info(f"Patching {constants.KONFLUX_API_VERSION}/{constants.KIND_COMPONENT} {namespace}/{name}")
        await exectools.to_thread(
            api.patch,
            body=manifest,
            namespace=namespace,
            content_type="application/merge-patch+json",
            _request_timeout=self.request_timeout,
        )
        self._logger.info(f"Patched {constants.KONFLUX_API_VERSION}/{constants.KIND_COMPONENT} {namespace}/{name}")
