"""Unit tests for redirect CLI commands."""

import pytest
from unittest.mock import Mock, patch
from typer.testing import CliRunner

from hop.commands.redirect import (
    app,
    _check_root,
    _get_redirect_service,
    _parse_family,
)
from hop.core.audit import AuditEventType, AuditResult
from hop.core.exceptions import PersistenceError, ValidationError
from hop.services.nat import (
    AddressFamily,
    FamilyOutcome,
    OutcomeStatus,
    RedirectReport,
    RedirectRule,
    parse_rule_line,
)


runner = CliRunner()

BOTH = [AddressFamily.IPV4, AddressFamily.IPV6]


def _report(operation, *statuses):
    outcomes = []
    for family, status in zip(BOTH, statuses):
        rule = RedirectRule(35000, 36000, 443, address_family=family)
        outcomes.append(FamilyOutcome(rule, status, f"{family.label} {status.value}"))
    return RedirectReport(operation=operation, outcomes=outcomes)


@pytest.fixture
def mock_ctx():
    ctx = Mock()
    ctx.console = Mock()
    ctx.dry_run = False
    ctx.should_confirm = True
    ctx.config.port_hopping.start = 35000
    ctx.config.port_hopping.end = 36000
    ctx.config.port_hopping.target_port = 443
    ctx.config.port_hopping.families = "both"
    return ctx


@pytest.fixture
def mock_manager():
    manager = Mock()
    manager.ensure_present_all.return_value = _report(
        "add", OutcomeStatus.ADDED, OutcomeStatus.ADDED
    )
    manager.ensure_absent_all.return_value = _report(
        "remove", OutcomeStatus.REMOVED, OutcomeStatus.ABSENT
    )
    manager.platform.persistence.value = "netfilter-persistent"
    return manager


@pytest.fixture
def service(mock_ctx, mock_manager):
    """Patch the service factory, root check and audit logger."""
    with patch("hop.commands.redirect._get_redirect_service") as get_service, \
            patch("hop.commands.redirect._check_root"), \
            patch("hop.commands.redirect.get_audit_logger") as get_audit:
        get_service.return_value = (mock_ctx, mock_manager)
        audit = Mock()
        get_audit.return_value = audit
        yield mock_ctx, mock_manager, audit


class TestParseFamily:
    """Tests for _parse_family helper."""

    def test_both(self):
        assert _parse_family("both") == BOTH

    def test_single(self):
        assert _parse_family("ipv4") == [AddressFamily.IPV4]
        assert _parse_family("IPV6") == [AddressFamily.IPV6]

    def test_invalid(self):
        with pytest.raises(ValidationError) as exc:
            _parse_family("inet")
        assert "Invalid address family" in str(exc.value)


class TestCheckRoot:
    """Tests for _check_root helper."""

    def test_allows_root(self):
        mock_ctx = Mock()
        mock_ctx.dry_run = False

        with patch("os.geteuid", return_value=0):
            _check_root(mock_ctx)

    def test_allows_dry_run(self):
        """Dry-run needs no root."""
        mock_ctx = Mock()
        mock_ctx.dry_run = True

        with patch("os.geteuid", return_value=1000):
            _check_root(mock_ctx)

    def test_rejects_non_root(self):
        import typer

        mock_ctx = Mock()
        mock_ctx.dry_run = False
        mock_ctx.console = Mock()

        with patch("os.geteuid", return_value=1000):
            with pytest.raises(typer.Exit) as exc_info:
                _check_root(mock_ctx)
            assert exc_info.value.exit_code == 6


class TestGetRedirectService:
    """Tests for _get_redirect_service factory."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("HOP_CONFIG", "HOP_IPTABLES", "HOP_IP6TABLES", "HOP_PERSISTENCE"):
            monkeypatch.delenv(name, raising=False)

    def test_uses_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "firewall:\n"
            "  max_delete_iterations: 7\n"
            "  persistence: none\n"
            "  iptables: iptables-legacy\n"
        )

        ctx, manager = _get_redirect_service(dry_run=True, config=path)

        assert ctx.dry_run is True
        assert manager.max_delete_iterations == 7
        assert manager.controllers[AddressFamily.IPV4].binary == "iptables-legacy"
        assert manager.persister is not None
        assert manager.persister.method.value == "none"

    def test_invalid_config_exits(self, tmp_path):
        import typer

        path = tmp_path / "config.yaml"
        path.write_text("firewall:\n  max_delete_iterations: 0\n")

        with pytest.raises(typer.Exit) as exc_info:
            _get_redirect_service(config=path)
        assert exc_info.value.exit_code == 2


class TestAddCommand:
    """Tests for 'hop redirect add'."""

    def test_add(self, service):
        ctx, manager, audit = service

        result = runner.invoke(app, ["add", "35000", "36000", "443"])

        assert result.exit_code == 0
        manager.ensure_present_all.assert_called_once_with(
            35000, 36000, 443, BOTH, persist=True,
        )
        ctx.console.table.assert_called_once()
        args = audit.log_result.call_args
        assert args.args[0] == AuditEventType.REDIRECT_ADD
        assert args.args[1] == AuditResult.SUCCESS

    def test_add_single_family_no_save(self, service):
        _, manager, _ = service

        result = runner.invoke(app, ["add", "35000", "36000", "443", "--family", "ipv4", "--no-save"])

        assert result.exit_code == 0
        manager.ensure_present_all.assert_called_once_with(
            35000, 36000, 443, [AddressFamily.IPV4], persist=False,
        )

    def test_invalid_family(self, service):
        _, manager, audit = service

        result = runner.invoke(app, ["add", "35000", "36000", "443", "--family", "ipx"])

        assert result.exit_code == 3
        manager.ensure_present_all.assert_not_called()
        audit.log_failure.assert_called_once()

    def test_invalid_range(self, service):
        _, manager, _ = service
        manager.ensure_present_all.side_effect = ValidationError("Invalid port range: 36000:35000")

        result = runner.invoke(app, ["add", "36000", "35000", "443"])

        assert result.exit_code == 3

    def test_failed_family_exits_15(self, service):
        _, manager, audit = service
        manager.ensure_present_all.return_value = _report(
            "add", OutcomeStatus.ADDED, OutcomeStatus.FAILED
        )

        result = runner.invoke(app, ["add", "35000", "36000", "443"])

        assert result.exit_code == 15
        assert audit.log_result.call_args.args[1] == AuditResult.FAILURE

    def test_partial_family_is_success(self, service):
        _, manager, audit = service
        manager.ensure_present_all.return_value = _report(
            "add", OutcomeStatus.ADDED, OutcomeStatus.SKIPPED
        )

        result = runner.invoke(app, ["add", "35000", "36000", "443"])

        assert result.exit_code == 0
        assert audit.log_result.call_args.args[1] == AuditResult.PARTIAL

    def test_nothing_handled_exits_6(self, service):
        _, manager, _ = service
        manager.ensure_present_all.return_value = _report(
            "add", OutcomeStatus.SKIPPED, OutcomeStatus.SKIPPED
        )

        result = runner.invoke(app, ["add", "35000", "36000", "443"])

        assert result.exit_code == 6

    def test_dry_run_audited_as_dry_run(self, service):
        ctx, _, audit = service
        ctx.dry_run = True

        result = runner.invoke(app, ["add", "35000", "36000", "443", "--dry-run"])

        assert result.exit_code == 0
        assert audit.log_result.call_args.args[1] == AuditResult.DRY_RUN

    def test_unpersisted_change_warns(self, service):
        ctx, manager, audit = service
        report = _report("add", OutcomeStatus.ADDED, OutcomeStatus.ADDED)
        report.persisted = False
        manager.ensure_present_all.return_value = report

        result = runner.invoke(app, ["add", "35000", "36000", "443"])

        assert result.exit_code == 0
        ctx.console.warn.assert_called_with("Rules are active but were not persisted")
        assert audit.log_result.call_args.args[1] == AuditResult.PARTIAL


class TestRemoveCommand:
    """Tests for 'hop redirect remove'."""

    def test_remove(self, service):
        _, manager, audit = service

        result = runner.invoke(app, ["remove", "35000", "36000", "443"])

        assert result.exit_code == 0
        manager.ensure_absent_all.assert_called_once_with(
            35000, 36000, 443, BOTH, persist=True,
        )
        assert audit.log_result.call_args.args[0] == AuditEventType.REDIRECT_REMOVE


class TestApplyClearCommands:
    """Tests for 'hop redirect apply' and 'hop redirect clear'."""

    def test_apply_uses_config(self, service):
        ctx, manager, _ = service
        ctx.config.port_hopping.families = "ipv4"

        result = runner.invoke(app, ["apply"])

        assert result.exit_code == 0
        manager.ensure_present_all.assert_called_once_with(
            35000, 36000, 443, [AddressFamily.IPV4], persist=True,
        )

    def test_apply_family_override(self, service):
        _, manager, _ = service

        runner.invoke(app, ["apply", "--family", "ipv6"])

        assert manager.ensure_present_all.call_args.args[3] == [AddressFamily.IPV6]

    def test_clear_declined(self, service):
        ctx, manager, _ = service
        ctx.console.confirm.return_value = False

        result = runner.invoke(app, ["clear"])

        assert result.exit_code == 0
        manager.ensure_absent_all.assert_not_called()

    def test_clear_confirmed(self, service):
        ctx, manager, _ = service
        ctx.console.confirm.return_value = True

        result = runner.invoke(app, ["clear"])

        assert result.exit_code == 0
        manager.ensure_absent_all.assert_called_once()

    def test_clear_yes_skips_prompt(self, service):
        ctx, manager, _ = service
        ctx.should_confirm = False

        result = runner.invoke(app, ["clear", "--yes"])

        assert result.exit_code == 0
        ctx.console.confirm.assert_not_called()
        manager.ensure_absent_all.assert_called_once()


class TestListCommand:
    """Tests for 'hop redirect list'."""

    def test_list_shows_table(self, service):
        ctx, manager, _ = service
        manager.list_redirects.side_effect = lambda family: (
            [parse_rule_line("-A PREROUTING -p udp -m udp --dport 35000:36000 -j REDIRECT --to-ports 443")]
            if family == AddressFamily.IPV4 else []
        )

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert manager.list_redirects.call_count == 2
        title, columns, rows = ctx.console.table.call_args.args
        assert rows == [["IPv4", "udp", "35000:36000", "443", "-"]]

    def test_list_empty(self, service):
        ctx, manager, _ = service
        manager.list_redirects.return_value = []

        result = runner.invoke(app, ["list", "--family", "ipv4"])

        assert result.exit_code == 0
        ctx.console.info.assert_called_with("No NAT redirects installed")
        ctx.console.table.assert_not_called()


class TestSaveCommand:
    """Tests for 'hop redirect save'."""

    def test_save(self, service):
        _, manager, audit = service

        result = runner.invoke(app, ["save"])

        assert result.exit_code == 0
        manager.persister.save.assert_called_once()
        audit.log_success.assert_called_once_with(
            AuditEventType.FIREWALL_SAVE, "netfilter-persistent",
        )

    def test_save_failure(self, service):
        _, manager, audit = service
        manager.persister.save.side_effect = PersistenceError(
            "No firewall persistence mechanism available", method="none",
        )

        result = runner.invoke(app, ["save"])

        assert result.exit_code == 16
        audit.log_failure.assert_called_once()
