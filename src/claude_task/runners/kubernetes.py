"""Kubernetes Job execution backend."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import shlex
import time
from pathlib import Path, PurePosixPath
from typing import Any, Callable

import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException

from ..config import KubernetesSettings
from .base import (
    AsyncTaskResult,
    BackendExecutionError,
    BackendProvisionError,
    OutputCallback,
    RunOptions,
    SyncTaskResult,
    TaskConfig,
    TaskResult,
    WatchTimeout,
    build_agent_command,
)
from .output import OutputDemultiplexer, Stream

logger = logging.getLogger(__name__)

ENTRYPOINT = "/usr/local/bin/claude-entrypoint.sh"
JOB_DELETE_TIMEOUT_SECONDS = 60
APP_LABEL = {"app": "claude-task"}
CREDENTIAL_FILES = (
    (".claude/.credentials.json", "credentials"),
    (".claude.json", "claude-config"),
    (".claude/CLAUDE.md", "claude-memory"),
)
_DNS_UNSAFE = re.compile(r"[^a-z0-9-]+")

CLONE_SCRIPT = """\
set -e
REPO_URL={repo_url}
BRANCH={branch}

if [ -n "$GIT_TOKEN" ] && echo "$REPO_URL" | grep -q "github\\.com"; then
    OWNER=$(echo "$REPO_URL" | sed -n 's/.*github\\.com[:/]\\([^/]*\\)\\/.*/\\1/p')
    REPO=$(echo "$REPO_URL" | sed -n 's/.*github\\.com[:/][^/]*\\/\\([^/]*\\)$/\\1/p' | sed 's/\\.git$//')
    if [ -n "$OWNER" ] && [ -n "$REPO" ]; then
        echo "Cloning private repository github.com/$OWNER/$REPO"
        CLONE_URL="https://${{GIT_TOKEN}}@github.com/${{OWNER}}/${{REPO}}.git"
    else
        echo "Warning: could not parse GitHub repository URL: $REPO_URL"
        CLONE_URL="$REPO_URL"
    fi
else
    echo "No git credentials found, cloning as a public repository"
    CLONE_URL="$REPO_URL"
fi

if ! git clone "$CLONE_URL" /workspace; then
    echo "Failed to clone repository. It may be private without credentials, the URL may be wrong, or the token may be expired."
    exit 1
fi

cd /workspace
git config --global user.email "claude-task@example.com"
git config --global user.name "Claude Task"
git checkout -b "$BRANCH"
echo "New branch created: $BRANCH"

CLAUDE_CMD={agent_command}
echo "Executing: $CLAUDE_CMD"
set +e
eval "$CLAUDE_CMD"
CLAUDE_EXIT=$?
if [ $CLAUDE_EXIT -eq 0 ]; then
    echo "Claude task completed successfully"
else
    echo "Claude task failed with exit code: $CLAUDE_EXIT"
fi
exit $CLAUDE_EXIT
"""


def job_name_for(task_id: str) -> str:
    """DNS-1123 compliant job name for ``task_id``."""

    name = _DNS_UNSAFE.sub("-", f"claude-task-{task_id}".lower()).strip("-")
    return name[:63].rstrip("-")


def _encode(content: bytes | str) -> str:
    raw = content.encode("utf-8") if isinstance(content, str) else content
    return base64.b64encode(raw).decode("ascii")


def _mcp_config_target(mcp_config: Path | None) -> str | None:
    if mcp_config is None:
        return None
    path = Path(mcp_config)
    relative = path.name if path.is_absolute() else path.as_posix()
    return str(PurePosixPath("/workspace") / relative)


def build_job_script(task: TaskConfig, options: RunOptions) -> str:
    if not task.repo_url:
        raise BackendProvisionError("Kubernetes tasks need a repository URL to clone")
    command = build_agent_command(options, _mcp_config_target(options.mcp_config))
    return CLONE_SCRIPT.format(
        repo_url=shlex.quote(task.repo_url),
        branch=shlex.quote(task.branch or f"claude-task/{task.task_id}"),
        agent_command=shlex.quote(command),
    )


def build_job_manifest(
    task: TaskConfig,
    options: RunOptions,
    settings: KubernetesSettings,
    *,
    has_git_secret: bool,
) -> dict[str, Any]:
    """Return the Job manifest as a plain dict accepted by the API client."""

    name = job_name_for(task.task_id)
    env: list[dict[str, Any]] = [{"name": "CLAUDE_CONFIG_DIR", "value": "/home/node/.claude"}]
    env.extend({"name": key, "value": value} for key, value in sorted(task.environment.items()))
    if options.debug:
        env.append({"name": "DEBUG_MODE", "value": "true"})
    if options.oauth_token:
        env.append({"name": "CLAUDE_CODE_OAUTH_TOKEN", "value": options.oauth_token})
    if has_git_secret:
        env.append(
            {
                "name": "GIT_TOKEN",
                "valueFrom": {
                    "secretKeyRef": {
                        "name": settings.git_secret_name,
                        "key": settings.git_secret_key,
                        "optional": True,
                    }
                },
            }
        )

    pod_spec: dict[str, Any] = {
        "restartPolicy": "Never",
        "containers": [
            {
                "name": "job-runner",
                "image": settings.image,
                "command": [ENTRYPOINT],
                "args": ["/bin/sh", "-c", build_job_script(task, options)],
                "env": env,
                "volumeMounts": [
                    {"name": "claude-home", "mountPath": "/home/base", "readOnly": True},
                ],
            }
        ],
        "volumes": [
            {
                "name": "claude-home",
                "secret": {
                    "secretName": settings.credentials_secret_name,
                    "optional": True,
                    "items": [
                        {"key": "credentials", "path": ".claude/.credentials.json"},
                        {"key": "claude-memory", "path": ".claude/CLAUDE.md"},
                        {"key": "claude-config", "path": ".claude.json"},
                    ],
                },
            }
        ],
    }
    if settings.image_pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": settings.image_pull_secret}]

    labels = {"app": "job-runner", "job-name": name}
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": name, "namespace": settings.namespace, "labels": labels},
        "spec": {
            "backoffLimit": 0,
            "ttlSecondsAfterFinished": 300,
            "template": {"metadata": {"labels": labels}, "spec": pod_spec},
        },
    }


class KubernetesJobRunner:
    """Runs the agent as a one-shot Kubernetes Job that clones the repository in-pod."""

    def __init__(
        self,
        settings: KubernetesSettings,
        *,
        batch_api: Any | None = None,
        core_api: Any | None = None,
        watch_factory: Callable[[], Any] = k8s_watch.Watch,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_output: OutputCallback | None = None,
    ) -> None:
        self._settings = settings
        self._batch_api = batch_api
        self._core_api = core_api
        self._watch_factory = watch_factory
        self._clock = clock
        self._sleep = sleep
        self._on_output = on_output

    def _load_config(self) -> None:
        try:
            k8s_config.load_kube_config(context=self._settings.context)
        except k8s_config.ConfigException:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException as exc:
                raise BackendProvisionError(f"No usable Kubernetes configuration: {exc}") from exc

    @property
    def batch_api(self) -> Any:
        if self._batch_api is None:
            self._load_config()
            self._batch_api = k8s_client.BatchV1Api()
        return self._batch_api

    @property
    def core_api(self) -> Any:
        if self._core_api is None:
            self._load_config()
            self._core_api = k8s_client.CoreV1Api()
        return self._core_api

    @property
    def namespace(self) -> str:
        return self._settings.namespace

    # Cluster setup

    def ensure_namespace(self) -> bool:
        """Create the namespace if missing; True when it was created."""

        try:
            self.core_api.read_namespace(self.namespace)
            logger.info("Namespace already exists", extra={"namespace": self.namespace})
            return False
        except ApiException as exc:
            if exc.status != 404:
                raise BackendProvisionError(f"Failed to check namespace {self.namespace}: {exc}") from exc
        body = {"metadata": {"name": self.namespace, "labels": dict(APP_LABEL)}}
        try:
            self.core_api.create_namespace(body)
        except ApiException as exc:
            raise BackendProvisionError(f"Failed to create namespace {self.namespace}: {exc}") from exc
        logger.info("Created namespace", extra={"namespace": self.namespace})
        return True

    def secret_exists(self, secret_name: str) -> bool:
        try:
            self.core_api.read_namespaced_secret(secret_name, self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise BackendProvisionError(f"Failed to read secret {secret_name}: {exc}") from exc
        return True

    def _put_secret(self, secret_name: str, body: dict[str, Any], *, replace: bool) -> None:
        try:
            if self.secret_exists(secret_name):
                if not replace:
                    logger.info("Secret already exists", extra={"secret": secret_name})
                    return
                self.core_api.replace_namespaced_secret(secret_name, self.namespace, body)
            else:
                self.core_api.create_namespaced_secret(self.namespace, body)
        except ApiException as exc:
            raise BackendProvisionError(f"Failed to write secret {secret_name}: {exc}") from exc
        logger.info("Stored secret", extra={"secret": secret_name, "namespace": self.namespace})

    def create_git_secret(self, token: str, *, replace: bool = False) -> None:
        name = self._settings.git_secret_name
        body = {
            "metadata": {"name": name, "namespace": self.namespace, "labels": dict(APP_LABEL)},
            "data": {self._settings.git_secret_key: _encode(token)},
        }
        self._put_secret(name, body, replace=replace)

    def create_credentials_secret(self, home_dir: Path) -> None:
        """Store the task home files in the credentials secret, replacing any previous one."""

        data: dict[str, str] = {}
        for relative, key in CREDENTIAL_FILES:
            path = Path(home_dir) / relative
            if path.exists():
                data[key] = _encode(path.read_bytes())
            else:
                logger.warning("Credential file missing", extra={"path": str(path)})
        if not data:
            raise BackendProvisionError(
                f"No Claude configuration files found in {home_dir}; run setup first"
            )
        name = self._settings.credentials_secret_name
        body = {
            "metadata": {"name": name, "namespace": self.namespace, "labels": dict(APP_LABEL)},
            "data": data,
        }
        self._put_secret(name, body, replace=True)

    def _job_exists(self, job_name: str) -> bool:
        try:
            self.batch_api.read_namespaced_job(job_name, self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise BackendProvisionError(f"Failed to read job {job_name}: {exc}") from exc
        return True

    def delete_job_if_exists(self, job_name: str) -> bool:
        """Delete a previous job of the same name and wait until it and its pods are gone.

        Foreground propagation keeps the job object until its pods are deleted,
        so pod lookups by ``job-name`` never return a previous attempt's pod.
        """

        if not self._job_exists(job_name):
            return False
        logger.info("Deleting previous job", extra={"job": job_name, "namespace": self.namespace})
        try:
            self.batch_api.delete_namespaced_job(job_name, self.namespace, propagation_policy="Foreground")
        except ApiException as exc:
            if exc.status != 404:
                raise BackendProvisionError(f"Failed to delete job {job_name}: {exc}") from exc

        deadline = self._clock() + JOB_DELETE_TIMEOUT_SECONDS
        while self._job_exists(job_name):
            if self._clock() >= deadline:
                raise BackendProvisionError(
                    f"Previous job {job_name} was not deleted within {JOB_DELETE_TIMEOUT_SECONDS}s"
                )
            self._sleep(1.0)
        return True

    # TaskRunner

    async def credentials_store_exists(self) -> bool:
        return await asyncio.to_thread(self.secret_exists, self._settings.credentials_secret_name)

    async def install_credentials(self, home_dir: Path) -> None:
        await asyncio.to_thread(self.ensure_namespace)
        await asyncio.to_thread(self.create_credentials_secret, home_dir)

    async def run(self, task: TaskConfig, options: RunOptions) -> TaskResult:
        return await asyncio.to_thread(self._run_blocking, task, options)

    def _run_blocking(self, task: TaskConfig, options: RunOptions) -> TaskResult:
        has_git_secret = self.secret_exists(self._settings.git_secret_name)
        if not has_git_secret:
            logger.warning(
                "Git secret not found; only public repositories can be cloned",
                extra={"secret": self._settings.git_secret_name, "namespace": self.namespace},
            )

        manifest = build_job_manifest(task, options, self._settings, has_git_secret=has_git_secret)
        name = manifest["metadata"]["name"]
        if options.debug:
            logger.debug("Job manifest:\n%s", yaml.safe_dump(manifest, sort_keys=False))

        self.delete_job_if_exists(name)
        try:
            self.batch_api.create_namespaced_job(self.namespace, manifest)
        except ApiException as exc:
            raise BackendProvisionError(f"Failed to create job {name}: {exc}") from exc
        logger.info("Submitted job", extra={"job": name, "namespace": self.namespace})

        if options.async_mode:
            return AsyncTaskResult(
                task_id=task.task_id,
                unit_id=name,
                namespace=self.namespace,
                hints=[
                    f"kubectl get job {name} -n {self.namespace}",
                    f"kubectl logs -f job/{name} -n {self.namespace}",
                    f"kubectl delete job {name} -n {self.namespace}",
                ],
            )

        exit_code = self.wait_for_completion(name, self._settings.job_timeout_seconds)
        logs = self.fetch_logs(name)
        demux = OutputDemultiplexer(self._on_output)
        demux.feed(logs, Stream.STDOUT)
        demux.finish()
        return SyncTaskResult(
            task_id=task.task_id,
            output=demux.agent_output,
            stderr="",
            setup_output=demux.setup_output,
            exit_code=exit_code,
        )

    def wait_for_completion(self, job_name: str, timeout_seconds: float) -> int:
        """Block until the job succeeds (0) or fails (1); raise WatchTimeout on expiry."""

        deadline = self._clock() + timeout_seconds
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise WatchTimeout(f"Job {job_name} did not finish within {timeout_seconds:g}s")
            watcher = self._watch_factory()
            try:
                for event in watcher.stream(
                    self.batch_api.list_namespaced_job,
                    self.namespace,
                    field_selector=f"metadata.name={job_name}",
                    timeout_seconds=max(1, int(min(remaining, 30))),
                ):
                    if event.get("type") == "ERROR":
                        raise BackendExecutionError(f"Watch error for job {job_name}: {event.get('object')}")
                    status = getattr(event.get("object"), "status", None)
                    if status is None:
                        continue
                    if (status.succeeded or 0) > 0:
                        return 0
                    if (status.failed or 0) > 0:
                        return 1
                    if self._clock() >= deadline:
                        break
            except ApiException as exc:
                raise BackendExecutionError(f"Failed to watch job {job_name}: {exc}") from exc
            finally:
                watcher.stop()

    def fetch_logs(self, job_name: str) -> str:
        try:
            pods = self.core_api.list_namespaced_pod(self.namespace, label_selector=f"job-name={job_name}")
        except ApiException as exc:
            raise BackendExecutionError(f"Failed to list pods for job {job_name}: {exc}") from exc
        if not pods.items:
            raise BackendExecutionError(f"Pod for job {job_name} not found")
        pod_name = pods.items[0].metadata.name
        try:
            return self.core_api.read_namespaced_pod_log(pod_name, self.namespace)
        except ApiException as exc:
            raise BackendExecutionError(f"Failed to read logs for pod {pod_name}: {exc}") from exc


__all__ = [
    "KubernetesJobRunner",
    "build_job_manifest",
    "build_job_script",
    "job_name_for",
]
