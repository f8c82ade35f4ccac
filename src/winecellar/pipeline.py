"""
Reconciliation pipeline: from a unit declaration to a launchable plan.

Order of a run:
    1. materialize the runtime and every library (per-key cache locks)
    2. fetch helper tools needed for fix-ups
    3. under the per-environment lock:
         initialize the prefix, install artifacts, reconcile the prefix
    4. return a LaunchPlan for the downstream launcher

Installs need an initialized prefix, which is why initialization runs
before the installer and the rest of reconciliation after it.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .config.settings import Settings
from .config.types import (
    ArtifactDescriptor,
    CachedArtifact,
    InstallKind,
    InstallOutcome,
    ManifestConfig,
    UnitConfig,
)
from .environment.cache import ArtifactCache
from .environment.locks import SharedResourceGuard
from .environment.paths import CellarPaths
from .environment.prefix import EnvironmentHandle
from .environment.processes import sweep_prefix
from .environment.reconcile import EnvironmentReconciler, ReconcileReport
from .errors import ConfigError
from .install import Installer
from .registry import get_artifact, get_tool
from .resolver import VersionResolver
from .runner import (
    CommandRunner,
    WineRuntime,
    build_environment,
    find_system_wine,
    runtime_from_artifact,
)
from .sources.http import Deadline, HttpClient

logger = logging.getLogger("winecellar.pipeline")

# Tools winetricks verbs rely on
FIXUP_TOOLS = ("winetricks", "cabextract")


@dataclass
class LaunchPlan:
    """Everything a launcher needs to start the unit."""
    unit: str
    name: str
    handle: EnvironmentHandle
    runtime: WineRuntime
    env: Dict[str, str]
    argv: List[str]
    cwd: Path
    artifacts: Dict[str, CachedArtifact] = field(default_factory=dict)
    installs: Dict[str, InstallOutcome] = field(default_factory=dict)
    report: ReconcileReport = field(default_factory=ReconcileReport)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit": self.unit,
            "name": self.name,
            "prefix": str(self.handle.root),
            "runtime": {"wine": str(self.runtime.wine), "version": self.runtime.version},
            "env": dict(sorted(self.env.items())),
            "argv": list(self.argv),
            "cwd": str(self.cwd),
            "artifacts": {k: {"version": a.version, "path": str(a.path)} for k, a in self.artifacts.items()},
            "installs": {k: v.value for k, v in self.installs.items()},
            "reconcile": {
                "initialized": self.report.initialized,
                "normalized": self.report.normalized,
                "mounts_changed": self.report.mounts_changed,
                "fixups_applied": self.report.fixups_applied,
                "hooks_run": self.report.hooks_run,
            },
        }


class ReconciliationPipeline:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        manifest: Optional[ManifestConfig] = None,
        http: Optional[HttpClient] = None,
        runner_factory: Callable[[Mapping[str, str]], CommandRunner] = CommandRunner,
        log: Callable[[str], None] = print,
    ):
        self.manifest = manifest or ManifestConfig()
        settings = settings or Settings.from_env()
        self.settings = settings.with_home(self.manifest.home)
        self.paths = CellarPaths(self.settings.home)
        self.http = http or HttpClient(timeout=self.settings.http_timeout, github_token=self.settings.github_token)
        self.runner_factory = runner_factory
        self.log = log

    def cache(self, deadline: Optional[Deadline] = None) -> ArtifactCache:
        s = self.settings
        resolver = VersionResolver(self.http, retries=s.retries, backoff=s.backoff, deadline=deadline)
        return ArtifactCache(
            self.paths, resolver, self.http,
            lock_timeout=s.lock_timeout, retries=s.retries, backoff=s.backoff,
            deadline=deadline, latest_ttl=s.latest_ttl,
        )

    def descriptor(self, name: str) -> ArtifactDescriptor:
        return get_artifact(name, self.manifest.artifacts)

    def unit(self, unit: Union[str, UnitConfig]) -> UnitConfig:
        if isinstance(unit, UnitConfig):
            return unit
        if unit not in self.manifest.units:
            known = ", ".join(sorted(self.manifest.units)) or "none"
            raise ConfigError(f"Unknown unit {unit!r} (declared: {known})", phase="config")
        return self.manifest.units[unit]

    def handle(self, prefix: str) -> EnvironmentHandle:
        return EnvironmentHandle(prefix, self.paths.prefix_dir(prefix), self.paths.prefix_lock(prefix))

    # -------------------------------------------------------------------------
    # Prepare
    # -------------------------------------------------------------------------

    def _runtime(self, unit: UnitConfig, cache: ArtifactCache) -> WineRuntime:
        spec = unit.runtime
        if spec.is_system:
            return find_system_wine(spec.path)
        descriptor = self.descriptor(spec.kind)
        if descriptor.kind != "runtime":
            raise ConfigError(f"{spec.kind} is not a runtime", artifact=spec.kind, phase="config")
        self.log(f"[winecellar] Runtime {descriptor.name} ({spec.version})")
        return runtime_from_artifact(descriptor, cache.materialize(descriptor, spec.version))

    def _libraries(self, unit: UnitConfig, cache: ArtifactCache) -> Dict[str, Tuple[ArtifactDescriptor, CachedArtifact]]:
        libraries = {}
        for name, request in unit.libraries.items():
            descriptor = self.descriptor(name)
            if descriptor.kind != "library":
                raise ConfigError(f"{name} is not a library", artifact=name, phase="config")
            self.log(f"[winecellar] Library {name} ({request})")
            libraries[name] = (descriptor, cache.materialize(descriptor, request))
        return libraries

    def prepare(self, unit: Union[str, UnitConfig]) -> LaunchPlan:
        """
        Provision and reconcile everything unit needs.

        Raises:
            CellarError: Any failure, with artifact/version/phase context.
        """
        unit = self.unit(unit)
        deadline = Deadline(self.settings.run_timeout)
        cache = self.cache(deadline)

        runtime = self._runtime(unit, cache)
        libraries = self._libraries(unit, cache)

        winetricks = None
        if unit.environment.fixups:
            tools = {name: cache.ensure_tool(get_tool(name)) for name in FIXUP_TOOLS}
            winetricks = tools["winetricks"]

        handle = self.handle(unit.prefix)
        overrides = []
        env_paths = []
        for descriptor, artifact in libraries.values():
            if descriptor.install.kind is InstallKind.COPY_DLLS:
                overrides.extend(descriptor.install.overrides())
            for var, rel in descriptor.env_paths.items():
                env_paths.append((var, artifact.path / rel))

        env = build_environment(
            handle.root,
            runtime,
            unit_env=unit.environment.merged_env(),
            overrides=overrides,
            env_paths=env_paths,
            tool_dir=self.paths.bin_dir,
        )
        runner = self.runner_factory(env)
        reconciler = EnvironmentReconciler(runner, runtime, winetricks=winetricks, log=self.log)
        installer = Installer(runner, log=self.log)

        installs = {}
        with handle.lock(timeout=self.settings.lock_timeout):
            initialized = reconciler.initialize(handle)
            for name, (descriptor, artifact) in libraries.items():
                installs[name] = installer.ensure_installed(artifact, descriptor, handle)
            report = reconciler.reconcile(handle, unit.environment)
            report.initialized = report.initialized or initialized

        cwd = Path(os.path.expanduser(unit.cd)) if unit.cd else handle.drive_c
        argv = list(unit.wrapper) + [str(runtime.wine)] + list(unit.command)
        self.log(f"[winecellar] {unit.name} is ready")
        return LaunchPlan(
            unit=unit.key,
            name=unit.name,
            handle=handle,
            runtime=runtime,
            env=env,
            argv=argv,
            cwd=cwd,
            artifacts={name: artifact for name, (_, artifact) in libraries.items()},
            installs=installs,
            report=report,
        )

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def guard(self, handle: EnvironmentHandle) -> SharedResourceGuard:
        """Reference-counted guard of a prefix; the last holder sweeps its processes."""
        return SharedResourceGuard(
            self.paths.holders_file(f"prefix-{handle.name}"),
            on_last_release=lambda: sweep_prefix(handle.root, log=self.log),
        )

    @contextmanager
    def session(self, plan: LaunchPlan) -> Iterator[LaunchPlan]:
        """
        Hold the prefix while the unit runs.

        When the last session of the prefix ends, however it ends, remaining
        wine processes bound to the prefix are terminated.
        """
        with self.guard(plan.handle):
            yield plan
