"""Tests for simulator listing, device leases and simctl control."""

import pytest

from dev_cli.qa.errors import LeaseUnavailableError, NoMatchingSimulatorError
from dev_cli.qa.runner import CommandResult
from dev_cli.qa.simulator import (
    LeaseGuard,
    choose_simulator,
    claim_lock,
    cleanup_simulator,
    boot_and_inject,
    list_locks,
    lock_dir_for,
    name_for_udid,
    parse_available_simulators,
    read_lock_owner,
    release_lock,
    release_session_locks,
    reusable_lease,
)

from conftest import SIMCTL_LISTING, FakeCommandRunner

PHONE_15 = "AAAAAAAA-AAAA-AAAA-AAAA-AAAAAAAAAAAA"
PHONE_15_PRO = "BBBBBBBB-BBBB-BBBB-BBBB-BBBBBBBBBBBB"
IPAD = "11111111-1111-1111-1111-111111111111"


class TestListing:
    def test_only_first_ios_section(self):
        candidates = parse_available_simulators(SIMCTL_LISTING)
        assert [c.udid for c in candidates] == [IPAD, PHONE_15, PHONE_15_PRO]
        assert candidates[0].name == "iPad Air (5th generation)"
        assert candidates[1].is_phone
        assert not candidates[0].is_phone

    def test_no_ios_section(self):
        assert parse_available_simulators("== Devices ==\n-- tvOS 17.5 --\n    Apple TV (X-1)\n") == []

    def test_name_for_udid(self):
        assert name_for_udid(SIMCTL_LISTING, PHONE_15_PRO) == "iPhone 15 Pro"
        assert name_for_udid(SIMCTL_LISTING, "CCCCCCCC-CCCC-CCCC-CCCC-CCCCCCCCCCCC") is None


class TestLocks:
    def test_claim_is_exclusive(self, tmp_path):
        first = claim_lock(tmp_path, PHONE_15, "alpha")
        assert first == (lock_dir_for(tmp_path, PHONE_15), True)
        assert read_lock_owner(first[0]) == "alpha"
        assert (first[0] / "session").read_text() == "alpha\n"

        assert claim_lock(tmp_path, PHONE_15, "beta") is None

    def test_reclaim_by_owner_is_idempotent(self, tmp_path):
        claim_lock(tmp_path, PHONE_15, "alpha")
        assert claim_lock(tmp_path, PHONE_15, "alpha") == (lock_dir_for(tmp_path, PHONE_15), False)

    def test_release_only_by_owner(self, tmp_path):
        lock_dir, _ = claim_lock(tmp_path, PHONE_15, "alpha")

        assert release_lock(lock_dir, "beta") is False
        assert lock_dir.is_dir()

        assert release_lock(lock_dir, "alpha") is True
        assert not lock_dir.exists()

        assert claim_lock(tmp_path, PHONE_15, "beta") is not None

    def test_lock_without_session_file_is_foreign(self, tmp_path):
        lock_dir = lock_dir_for(tmp_path, PHONE_15)
        lock_dir.mkdir()
        assert claim_lock(tmp_path, PHONE_15, "alpha") is None
        assert release_lock(lock_dir, "alpha") is False
        assert list_locks(tmp_path) == [(PHONE_15, "unknown")]

    def test_release_session_locks(self, tmp_path):
        claim_lock(tmp_path, PHONE_15, "alpha")
        claim_lock(tmp_path, IPAD, "alpha")
        claim_lock(tmp_path, PHONE_15_PRO, "beta")

        released = release_session_locks(tmp_path, "alpha")

        assert sorted(p.name for p in released) == sorted([f"{PHONE_15}.lock", f"{IPAD}.lock"])
        assert list_locks(tmp_path) == [(PHONE_15_PRO, "beta")]

    def test_release_session_locks_missing_root(self, tmp_path):
        assert release_session_locks(tmp_path / "missing", "alpha") == []


class TestChooseSimulator:
    def test_prefers_phones(self, tmp_path):
        lease = choose_simulator(None, SIMCTL_LISTING, tmp_path, "alpha")
        assert lease.udid == PHONE_15
        assert lease.name == "iPhone 15"
        assert lease.acquired

    def test_skips_devices_leased_elsewhere(self, tmp_path):
        claim_lock(tmp_path, PHONE_15, "beta")
        lease = choose_simulator(None, SIMCTL_LISTING, tmp_path, "alpha")
        assert lease.udid == PHONE_15_PRO

    def test_falls_back_to_non_phone(self, tmp_path):
        claim_lock(tmp_path, PHONE_15, "beta")
        claim_lock(tmp_path, PHONE_15_PRO, "gamma")
        lease = choose_simulator(None, SIMCTL_LISTING, tmp_path, "alpha")
        assert lease.udid == IPAD

    def test_request_by_name_fragment(self, tmp_path):
        lease = choose_simulator("15 Pro", SIMCTL_LISTING, tmp_path, "alpha")
        assert lease.udid == PHONE_15_PRO

    def test_request_by_udid(self, tmp_path):
        lease = choose_simulator(IPAD, SIMCTL_LISTING, tmp_path, "alpha")
        assert lease.udid == IPAD

    def test_no_match(self, tmp_path):
        with pytest.raises(NoMatchingSimulatorError, match="request: Pixel"):
            choose_simulator("Pixel", SIMCTL_LISTING, tmp_path, "alpha")

    def test_empty_listing(self, tmp_path):
        with pytest.raises(NoMatchingSimulatorError, match="<auto>"):
            choose_simulator(None, "", tmp_path, "alpha")

    def test_contention_lists_owners(self, tmp_path):
        claim_lock(tmp_path, PHONE_15, "beta")
        with pytest.raises(LeaseUnavailableError) as excinfo:
            choose_simulator(PHONE_15, SIMCTL_LISTING, tmp_path, "alpha")

        message = str(excinfo.value)
        assert "No unlocked simulator is available for session 'alpha'" in message
        assert f"{PHONE_15} -> beta" in message


class TestReusableLease:
    def test_valid_lease_is_reused(self, tmp_path):
        lock_dir, _ = claim_lock(tmp_path, PHONE_15_PRO, "alpha")
        lease = reusable_lease(SIMCTL_LISTING, "alpha", PHONE_15_PRO, str(lock_dir))
        assert lease.name == "iPhone 15 Pro"
        assert lease.acquired is False

    def test_lock_owned_by_someone_else(self, tmp_path):
        lock_dir, _ = claim_lock(tmp_path, PHONE_15_PRO, "beta")
        assert reusable_lease(SIMCTL_LISTING, "alpha", PHONE_15_PRO, str(lock_dir)) is None

    def test_device_gone_from_listing(self, tmp_path):
        lock_dir, _ = claim_lock(tmp_path, PHONE_15_PRO, "alpha")
        assert reusable_lease("", "alpha", PHONE_15_PRO, str(lock_dir)) is None

    def test_nothing_recorded(self):
        assert reusable_lease(SIMCTL_LISTING, "alpha", None, None) is None


class TestLeaseGuard:
    def test_failure_releases_fresh_lease(self, tmp_path):
        with pytest.raises(RuntimeError):
            with LeaseGuard("alpha") as guard:
                lease = choose_simulator(None, SIMCTL_LISTING, tmp_path, "alpha")
                guard.track(lease)
                raise RuntimeError("boom")

        assert not lease.lock_dir.exists()

    def test_commit_keeps_lease(self, tmp_path):
        with LeaseGuard("alpha") as guard:
            lease = choose_simulator(None, SIMCTL_LISTING, tmp_path, "alpha")
            guard.track(lease)
            guard.commit()

        assert lease.lock_dir.is_dir()

    def test_reclaimed_lease_survives_failure(self, tmp_path):
        claim_lock(tmp_path, PHONE_15, "alpha")
        with pytest.raises(RuntimeError):
            with LeaseGuard("alpha") as guard:
                lease = choose_simulator(None, SIMCTL_LISTING, tmp_path, "alpha")
                guard.track(lease)
                raise RuntimeError("boom")

        assert lease.acquired is False
        assert lease.lock_dir.is_dir()


class TestSimctl:
    def test_boot_and_inject(self):
        runner = FakeCommandRunner()
        boot_and_inject(runner, PHONE_15, "demo", 18321, 18324)

        commands = runner.commands()
        assert commands[0] == ["xcrun", "simctl", "boot", PHONE_15]
        assert commands[1] == ["xcrun", "simctl", "bootstatus", PHONE_15, "-b"]
        assert [
            "xcrun", "simctl", "spawn", PHONE_15, "launchctl", "setenv",
            "BRAD_OS_API_URL", "http://127.0.0.1:18321/api/dev",
        ] in commands
        assert [
            "xcrun", "simctl", "spawn", PHONE_15, "launchctl", "setenv",
            "BRAD_OS_OTEL_BASE_URL", "http://127.0.0.1:18324",
        ] in commands
        assert [
            "xcrun", "simctl", "spawn", PHONE_15, "launchctl", "setenv", "BRAD_OS_QA_ID", "demo",
        ] in commands
        assert commands[-1] == [
            "xcrun", "simctl", "spawn", PHONE_15, "launchctl", "unsetenv", "USE_EMULATOR",
        ]

    def test_boot_failure_is_ignored(self):
        runner = FakeCommandRunner()
        runner.respond(["xcrun", "simctl", "boot"], CommandResult(149, "", "already booted"))
        boot_and_inject(runner, PHONE_15, "demo", 18321, 18324)
        assert len(runner.calls) == 6

    def test_cleanup_with_shutdown(self):
        runner = FakeCommandRunner()
        messages = cleanup_simulator(runner, PHONE_15, shutdown=True)

        unset = [c[-1] for c in runner.commands() if "unsetenv" in c]
        assert unset == ["BRAD_OS_API_URL", "BRAD_OS_OTEL_BASE_URL", "BRAD_OS_QA_ID"]
        assert runner.commands()[-1] == ["xcrun", "simctl", "shutdown", PHONE_15]
        assert messages == [
            f"Simulator: cleared QA environment on {PHONE_15}",
            f"Simulator: shut down {PHONE_15}",
        ]

    def test_cleanup_shutdown_failure(self):
        runner = FakeCommandRunner()
        runner.respond(["xcrun", "simctl", "shutdown"], CommandResult(1))
        messages = cleanup_simulator(runner, PHONE_15, shutdown=True)
        assert messages[-1] == f"Simulator: shutdown of {PHONE_15} skipped (not booted?)"

    def test_cleanup_without_shutdown(self):
        runner = FakeCommandRunner()
        cleanup_simulator(runner, PHONE_15, shutdown=False)
        assert not any("shutdown" in c for c in runner.commands())
