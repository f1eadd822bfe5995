"""
Tests for CommandController.

subprocess.run is monkeypatched; no provider CLI is executed. The only real
child processes are `cat` and `/bin/sh`.
"""

import os
import subprocess

import pytest

from conftest import make_descriptor
from envorchestra.cli import BUNDLED_ENVIRONMENTS_DIR
from envorchestra.controllers import CommandController
from envorchestra.errors import PermanentError, TransientError
from envorchestra.registry import load_descriptor_file
from envorchestra.schemas import ResourceKind, ResourceStatus


class FakeRun:
    """Stand-in for subprocess.run returning scripted results."""

    def __init__(self, *results):
        self.results = list(results)
        self.argv: list[list[str]] = []
        self.kwargs: list[dict] = []

    def __call__(self, argv, **kwargs):
        self.argv.append(argv)
        self.kwargs.append(kwargs)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def cluster():
    return make_descriptor(
        "cluster",
        ResourceKind.CLUSTER,
        params={
            "create": "eksctl create cluster --name ${CLUSTER_NAME} --nodes ${NODES}",
            "delete": "eksctl delete cluster --name ${CLUSTER_NAME}",
            "describe": "aws eks describe-cluster --name ${CLUSTER_NAME} --query cluster.status --output text",
            "status_map": {"ACTIVE": "ready", "CREATING": "pending", "FAILED": "failed"},
            "vars": {"NODES": 2},
        },
    )


@pytest.fixture
def controller():
    return CommandController(timeout=30, environ={"CLUSTER_NAME": "reports", "AWS_REGION": "us-east-1"})


class TestRender:
    """Tests for command template rendering."""

    def test_placeholders_resolved(self, controller, cluster):
        argv = controller.render(cluster, "create")
        assert argv == ["eksctl", "create", "cluster", "--name", "reports", "--nodes", "2"]

    def test_resource_id_and_handle(self, controller):
        descriptor = make_descriptor("db", params={"delete": "aws rds delete ${RESOURCE_ID} ${HANDLE}"})
        assert controller.render(descriptor, "delete", "arn:db") == ["aws", "rds", "delete", "db", "arn:db"]

    def test_list_template(self, controller):
        descriptor = make_descriptor("db", params={"create": ["aws", "rds", "--name", "${CLUSTER_NAME}-db"]})
        assert controller.render(descriptor, "create") == ["aws", "rds", "--name", "reports-db"]

    def test_shell_mode(self, controller):
        descriptor = make_descriptor("x", params={"create": "echo $$HOME | cat", "shell": True})
        assert controller.render(descriptor, "create") == ["/bin/sh", "-c", "echo $HOME | cat"]

    def test_unresolved_placeholder_is_permanent(self, controller):
        descriptor = make_descriptor("x", params={"create": "helm install ${CHART}"})
        with pytest.raises(PermanentError, match="unresolved placeholder"):
            controller.render(descriptor, "create")

    def test_missing_command_is_permanent(self, controller):
        with pytest.raises(PermanentError, match="has no 'create' command"):
            controller.render(make_descriptor("x"), "create")


class TestCreate:

    def test_success_returns_handle(self, monkeypatch, controller, cluster):
        run = FakeRun(completed(stdout='{"arn": "arn:cluster"}'))
        monkeypatch.setattr(subprocess, "run", run)

        assert controller.create(cluster) == {"arn": "arn:cluster"}
        assert run.kwargs[0]["timeout"] == 30
        assert run.kwargs[0]["env"]["CLUSTER_NAME"] == "reports"

    def test_plain_output_handle(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(stdout="creating...\nreports-cluster\n")))
        assert controller.create(cluster) == "reports-cluster"

    def test_already_exists_is_success(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="AlreadyExistsException: cluster exists")))
        assert controller.create(cluster) is None

    def test_throttling_is_transient(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(254, stderr="ThrottlingException: Rate exceeded")))
        with pytest.raises(TransientError, match="exit 254"):
            controller.create(cluster)

    def test_other_failure_is_permanent(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="InvalidParameterException: bad nodes")))
        with pytest.raises(PermanentError, match="InvalidParameterException"):
            controller.create(cluster)

    def test_custom_transient_pattern(self, monkeypatch, controller):
        descriptor = make_descriptor("x", params={"create": "helm install x", "transient_patterns": ["etcdserver"]})
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="Error: etcdserver: leader changed")))
        with pytest.raises(TransientError):
            controller.create(descriptor)

    def test_command_timeout_is_transient(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(subprocess.TimeoutExpired(cmd="eksctl", timeout=30)))
        with pytest.raises(TransientError, match="timed out after 30s"):
            controller.create(cluster)

    def test_missing_executable_is_permanent(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(FileNotFoundError("eksctl")))
        with pytest.raises(PermanentError, match="executable not found: eksctl"):
            controller.create(cluster)


class TestDelete:

    def test_success(self, monkeypatch, controller, cluster):
        run = FakeRun(completed())
        monkeypatch.setattr(subprocess, "run", run)
        controller.delete(cluster)
        assert run.argv[0][:3] == ["eksctl", "delete", "cluster"]

    def test_not_found_is_success(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="ResourceNotFoundException: No cluster found")))
        controller.delete(cluster)

    def test_dependency_violation_is_transient(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="DependencyViolation: has dependencies")))
        with pytest.raises(TransientError):
            controller.delete(cluster)


class TestDescribe:
    """Tests for mapping describe output to ResourceStatus."""

    @pytest.mark.parametrize("stdout,expected", [
        ("ACTIVE\n", ResourceStatus.READY),
        ("CREATING", ResourceStatus.PENDING),
        ("FAILED", ResourceStatus.FAILED),
        ("UPDATING", ResourceStatus.PENDING),
    ])
    def test_status_map(self, monkeypatch, controller, cluster, stdout, expected):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(stdout=stdout)))
        assert controller.describe(cluster) == expected

    def test_not_found_is_absent(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(254, stderr="ResourceNotFoundException")))
        assert controller.describe(cluster) == ResourceStatus.ABSENT

    def test_no_status_map_means_ready_on_success(self, monkeypatch, controller):
        descriptor = make_descriptor("rule", params={"describe": "aws ec2 describe-security-group-rules"})
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(stdout="{}")))
        assert controller.describe(descriptor) == ResourceStatus.READY

    def test_status_path(self, monkeypatch, controller):
        descriptor = make_descriptor(
            "kyverno",
            ResourceKind.CHART_RELEASE,
            params={
                "describe": "helm status kyverno --output json",
                "status_path": "info.status",
                "status_map": {"deployed": "ready", "pending-install": "pending", "failed": "failed"},
            },
        )
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(stdout='{"info": {"status": "deployed"}}')))
        assert controller.describe(descriptor) == ResourceStatus.READY

    def test_status_path_unreadable(self, monkeypatch, controller):
        descriptor = make_descriptor(
            "kyverno",
            params={"describe": "helm status kyverno", "status_path": "info.status", "status_map": {"deployed": "ready"}},
        )
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(stdout="not json")))
        with pytest.raises(PermanentError, match="cannot read 'info.status'"):
            controller.describe(descriptor)

    def test_describe_failure_classified(self, monkeypatch, controller, cluster):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(255, stderr="Could not connect to the endpoint: connection reset")))
        with pytest.raises(TransientError):
            controller.describe(cluster)


class TestShellFailures:
    """Exit 126/127 means the shell never ran the tool; that is never success."""

    @pytest.fixture
    def chart(self):
        return make_descriptor(
            "kyverno",
            ResourceKind.CHART_RELEASE,
            params={
                "shell": True,
                "create": "helm upgrade --install kyverno nirmata/kyverno",
                "delete": "helm uninstall kyverno --namespace kyverno",
                "describe": "helm status kyverno --namespace kyverno",
            },
        )

    def test_missing_tool_on_delete(self, monkeypatch, controller, chart):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(127, stderr="/bin/sh: 1: helm: not found")))
        with pytest.raises(PermanentError, match="could not be run"):
            controller.delete(chart)

    def test_missing_tool_on_describe(self, monkeypatch, controller, chart):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(127, stderr="/bin/sh: 1: helm: not found")))
        with pytest.raises(PermanentError):
            controller.describe(chart)

    def test_not_executable_on_create(self, monkeypatch, controller, chart):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(126, stderr="/bin/sh: 1: helm: Permission denied")))
        with pytest.raises(PermanentError, match="exit 126"):
            controller.create(chart)

    def test_generic_not_found_is_not_absent(self, monkeypatch, controller, chart):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="Error: kubeconfig context not found")))
        with pytest.raises(PermanentError):
            controller.describe(chart)

    def test_release_not_found_is_absent(self, monkeypatch, controller, chart):
        monkeypatch.setattr(subprocess, "run", FakeRun(completed(1, stderr="Error: release: not found")))
        assert controller.describe(chart) == ResourceStatus.ABSENT

    def test_real_shell_missing_tool(self):
        descriptor = make_descriptor(
            "kyverno",
            params={"shell": True, "delete": "envorchestra-no-such-tool uninstall kyverno"},
        )
        with pytest.raises(PermanentError, match="exit 127"):
            CommandController(timeout=30).delete(descriptor)


class TestProcessIsolation:
    """Provider commands must not share the orchestrator's terminal signals."""

    def test_runs_in_new_session(self, monkeypatch, controller, cluster):
        run = FakeRun(completed(stdout="ok"))
        monkeypatch.setattr(subprocess, "run", run)

        controller.create(cluster)
        assert run.kwargs[0]["start_new_session"] is True

    @pytest.mark.skipif(not os.path.exists("/proc/self/stat"), reason="needs procfs")
    def test_child_outside_caller_process_group(self):
        # A terminal Ctrl-C signals the caller's process group; the child must not be in it
        descriptor = make_descriptor("cluster", params={"create": "cat /proc/self/stat"})
        stat = CommandController(timeout=30).create(descriptor)

        pid = int(stat.split()[0])
        fields = stat.rsplit(")", 1)[1].split()
        pgrp, session = int(fields[2]), int(fields[3])
        assert pgrp == pid
        assert session == pid
        assert pgrp != os.getpgrp()
        assert session != os.getsid(0)


class TestBundledEnvironments:
    """Every bundled descriptor set must be drivable by CommandController."""

    REQUIRED_ENV = {
        "AWS_PROFILE": "test",
        "AWS_REGION": "us-east-1",
        "CLUSTER_NAME": "reports",
        "DB_PASSWORD": "secret",
        "VPC_SUBNET_IDS": "subnet-1 subnet-2",
        "DB_SECURITY_GROUP_ID": "sg-123",
    }

    @pytest.fixture
    def bundled(self):
        return [load_descriptor_file(path) for path in sorted(BUNDLED_ENVIRONMENTS_DIR.glob("*.yaml"))]

    def test_every_action_renders(self, bundled):
        assert bundled
        controller = CommandController(environ=self.REQUIRED_ENV)
        for descriptor_set in bundled:
            for descriptor in descriptor_set.resources:
                for action in ("create", "delete", "describe"):
                    assert controller.render(descriptor, action), f"{descriptor.id}: {action}"

    def test_every_status_map_is_valid(self, bundled):
        for descriptor_set in bundled:
            for descriptor in descriptor_set.resources:
                for value in descriptor.params.get("status_map", {}).values():
                    ResourceStatus(value)

    @pytest.mark.parametrize("stdout,expected", [
        ("1\n", ResourceStatus.READY),
        ("0\n", ResourceStatus.ABSENT),
    ])
    def test_ingress_rule_describe(self, monkeypatch, bundled, stdout, expected):
        rule = next(d for s in bundled for d in s.resources if d.id == "db-ingress")
        run = FakeRun(completed(stdout=stdout))
        monkeypatch.setattr(subprocess, "run", run)

        assert CommandController(environ=self.REQUIRED_ENV).describe(rule) == expected
        assert run.argv[0][:3] == ["aws", "ec2", "describe-security-group-rules"]
        assert "Name=group-id,Values=sg-123" in run.argv[0]
