import json

from code_sandbox.security import (
    ALLOWED_SYSCALLS,
    DEFAULT_MEMORY_BYTES,
    SECCOMP_PROFILE,
    compute_resource_limits,
    parse_memory_limit,
    seccomp_profile_json,
    security_opts,
)


def test_parse_memory_limit_units():
    assert parse_memory_limit("256m") == 256 * 1024**2
    assert parse_memory_limit("2g") == 2 * 1024**3
    assert parse_memory_limit("512k") == 512 * 1024
    assert parse_memory_limit("64M") == 64 * 1024**2


def test_parse_memory_limit_falls_back_on_garbage():
    for value in ("garbage", "", "12", "1.5g", "m", "-5m", "10mb"):
        assert parse_memory_limit(value) == DEFAULT_MEMORY_BYTES
    assert DEFAULT_MEMORY_BYTES == 128 * 1024**2


def test_compute_resource_limits():
    limits = compute_resource_limits("256m", 0.5)
    assert limits.memory_bytes == 256 * 1024**2
    assert limits.memory_swap_bytes == limits.memory_bytes
    assert limits.nano_cpus == 500_000_000
    assert limits.pids_limit == 64
    assert (limits.nofile_soft, limits.nofile_hard) == (256, 512)


def test_host_config_renders_ulimits():
    config = compute_resource_limits("128m", 1).host_config()
    assert config["mem_limit"] == config["memswap_limit"] == 128 * 1024**2
    assert config["nano_cpus"] == 1_000_000_000
    assert config["pids_limit"] == 64
    ulimits = {u["Name"]: (u["Soft"], u["Hard"]) for u in config["ulimits"]}
    assert ulimits == {"nofile": (256, 512), "nproc": (32, 64)}


def test_seccomp_profile_denies_by_default():
    assert SECCOMP_PROFILE["defaultAction"] == "SCMP_ACT_ERRNO"
    profile = json.loads(seccomp_profile_json())
    (rule,) = profile["syscalls"]
    assert rule["action"] == "SCMP_ACT_ALLOW"
    assert "socket" in rule["names"]
    assert "execve" in rule["names"]
    assert "mount" not in ALLOWED_SYSCALLS
    assert "ptrace" not in ALLOWED_SYSCALLS
    assert len(set(ALLOWED_SYSCALLS)) == len(ALLOWED_SYSCALLS)


def test_security_opts_always_harden():
    for mode in ("allowlist", "default"):
        opts = security_opts(mode)
        assert "no-new-privileges:true" in opts
        assert "apparmor=docker-default" in opts
    assert "seccomp=default" in security_opts("default")
    (seccomp,) = [o for o in security_opts("allowlist") if o.startswith("seccomp=")]
    assert json.loads(seccomp.split("=", 1)[1])["defaultAction"] == "SCMP_ACT_ERRNO"
