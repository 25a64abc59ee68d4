"""
Top-level installation workflow.

The orchestrator resolves a manifest into a plan, installs every tool and
synchronizes the SDK on a fixed-size worker pool, and composes the
environment descriptor once everything succeeded.

Failure policy:
- resolver errors abort before any work starts;
- a tool failure is recorded and never stops sibling installs; all of them
  are reported together in one AggregateError;
- an SDK failure is fatal: in-flight installs are cancelled and the SDK
  error propagates.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

from firmkit.config.settings import InstallerConfig
from firmkit.core.cancellation import CancellationToken, ensure_token
from firmkit.core.directory import CacheLayout
from firmkit.core.exceptions import (
    AggregateError,
    OperationCancelled,
    SdkError,
    ToolFailure,
    ToolInstallError,
)
from firmkit.core.platform import HostPlatform
from firmkit.environment.composer import EnvironmentComposer, EnvironmentDescriptor
from firmkit.manifest.models import InstallationPlan, Manifest, SdkSpec
from firmkit.manifest.resolver import ManifestResolver
from firmkit.sdk.repository import SdkRepository, SdkState
from firmkit.toolchain.installer import InstalledTool, ToolInstaller

logger = logging.getLogger(__name__)


class InstallationOrchestrator:
    """
    Drives resolution, installation, SDK sync and composition.

    Example:
        >>> orchestrator = InstallationOrchestrator(load_config())
        >>> descriptor = orchestrator.install(load_manifest(Path("firmkit.yaml")))
        >>> subprocess.run(["cmake", "--version"], env=descriptor.apply())
    """

    def __init__(
        self,
        config: Optional[InstallerConfig] = None,
        resolver: Optional[ManifestResolver] = None,
        installer: Optional[ToolInstaller] = None,
        sdk_repository: Optional[SdkRepository] = None,
        composer: Optional[EnvironmentComposer] = None,
        descriptor_path: Optional[Path] = None,
    ):
        """
        Initialize the orchestrator.

        Components default to implementations over ``config.cache_dir``.

        Args:
            config: Engine configuration (default: built-in defaults)
            resolver: Manifest resolver
            installer: Tool installer
            sdk_repository: SDK repository manager
            composer: Environment composer
            descriptor_path: Where to write the descriptor
                (default: ``<cache>/environment.json``)
        """
        self.config = config or InstallerConfig()
        self.layout = CacheLayout(self.config.cache_dir)
        self.resolver = resolver or ManifestResolver()
        self.installer = installer or ToolInstaller(self.layout, self.config)
        self.sdk_repository = sdk_repository or SdkRepository(
            self.layout, config=self.config
        )
        self.composer = composer or EnvironmentComposer()
        self.descriptor_path = descriptor_path or self.layout.environment_file

    def install(
        self,
        manifest: Manifest,
        sdk_spec: Optional[SdkSpec] = None,
        host: Optional[HostPlatform] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> EnvironmentDescriptor:
        """
        Install everything ``manifest`` requires and compose the environment.

        Args:
            manifest: Parsed manifest
            sdk_spec: SDK to use instead of the manifest's ``sdk`` section
            host: Target platform (default: the running host)
            cancel: Optional cancellation token

        Returns:
            The composed (and written) environment descriptor

        Raises:
            ManifestInvalid: If the manifest cannot be resolved
            UnsupportedPlatform: If a required tool has no entry for host
            DirtyCheckout: If the SDK checkout has local modifications
            SdkSyncFailure: If the SDK cannot be synchronized
            AggregateError: If one or more tools failed to install
            OperationCancelled: If the token is cancelled
        """
        cancel = ensure_token(cancel)
        removed = self.layout.clean_orphans(self.config.orphan_max_age_hours)
        if removed:
            logger.info(f"Removed {removed} orphaned staging entries")

        plan = self.resolver.resolve(manifest, host=host, sdk_spec=sdk_spec)
        return self.install_plan(plan, cancel=cancel)

    def install_plan(
        self, plan: InstallationPlan, cancel: Optional[CancellationToken] = None
    ) -> EnvironmentDescriptor:
        """
        Install an already resolved plan; see ``install``.
        """
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled()

        # Cancelled on SDK failure without touching the caller's token
        work = cancel.child()
        installed: Dict[str, InstalledTool] = {}
        failures: List[ToolFailure] = []
        sdk_state: Optional[SdkState] = None
        sdk_error: Optional[SdkError] = None

        jobs = max(1, self.config.jobs)
        sdk_note = f", SDK {plan.sdk.describe()}" if plan.sdk else ""
        logger.info(
            f"Installing {len(plan.tools)} tool(s) for {plan.platform} "
            f"with {jobs} worker(s){sdk_note}"
        )

        with ThreadPoolExecutor(
            max_workers=jobs, thread_name_prefix="firmkit-install"
        ) as executor:
            future_map = {}
            if plan.sdk is not None:
                sdk_future = executor.submit(self.sdk_repository.sync, plan.sdk, work)
                future_map[sdk_future] = None
            for spec in plan.tools:
                future_map[
                    executor.submit(self.installer.ensure_installed, spec, work)
                ] = spec

            try:
                for future in as_completed(future_map):
                    spec = future_map[future]
                    try:
                        result = future.result()
                    except OperationCancelled:
                        continue
                    except SdkError as e:
                        logger.error(f"SDK synchronization failed: {e}")
                        sdk_error = e
                        work.cancel(f"SDK synchronization failed: {e}")
                        continue
                    except ToolInstallError as e:
                        logger.error(f"Failed to install {e.tool_name}: {e}")
                        failures.append(ToolFailure(e.tool_name, e.kind, e))
                        continue

                    if spec is None:
                        sdk_state = result
                    else:
                        installed[spec.name] = result
            except BaseException:
                work.cancel("installation aborted")
                raise

        if sdk_error is not None:
            raise sdk_error
        cancel.raise_if_cancelled()
        if failures:
            order = {name: index for index, name in enumerate(plan.tool_names())}
            failures.sort(key=lambda failure: order.get(failure.tool_name, len(order)))
            raise AggregateError(failures)

        descriptor = self.composer.compose(plan, installed, sdk_state)
        self.composer.write(descriptor, self.descriptor_path)
        logger.info(
            f"Environment ready ({descriptor.fingerprint[:12]}): {self.descriptor_path}"
        )
        return descriptor


__all__ = ["InstallationOrchestrator"]
