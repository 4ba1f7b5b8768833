"""Security policy applied to every sandbox container.

Pure values and functions: the syscall allow-list, the hardening flags and
the per-container resource ceilings derived from configuration.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from docker.types import Ulimit

DEFAULT_MEMORY_BYTES = 128 * 1024 * 1024

PIDS_LIMIT = 64
NOFILE_SOFT = 256
NOFILE_HARD = 512
NPROC_SOFT = 32
NPROC_HARD = 64

_MEMORY_UNITS = {"k": 1024, "m": 1024**2, "g": 1024**3}
_MEMORY_RE = re.compile(r"^(\d+)([kmg])$")

ALLOWED_SYSCALLS: tuple[str, ...] = (
    "accept", "accept4", "access", "arch_prctl", "bind", "brk",
    "chmod", "chown", "clock_getres", "clock_gettime", "clock_nanosleep",
    "clone", "clone3", "close", "close_range", "connect",
    "dup", "dup2", "dup3", "epoll_create", "epoll_create1",
    "epoll_ctl", "epoll_pwait", "epoll_pwait2", "epoll_wait", "eventfd", "eventfd2",
    "execve", "exit", "exit_group", "faccessat", "faccessat2", "fadvise64", "fallocate",
    "fchdir", "fchmod", "fchmodat", "fchown", "fchownat", "fcntl",
    "fdatasync", "flock", "fork", "fstat", "fstatfs", "fsync", "ftruncate",
    "futex", "getcwd", "getdents", "getdents64", "getegid", "geteuid",
    "getgid", "getgroups", "getitimer", "getpeername", "getpgid", "getpgrp",
    "getpid", "getppid", "getpriority", "getrandom", "getresgid", "getresuid",
    "getrlimit", "get_robust_list", "getrusage", "getsid", "getsockname", "getsockopt",
    "gettid", "gettimeofday", "getuid", "getxattr", "inotify_add_watch",
    "inotify_init", "inotify_init1", "inotify_rm_watch", "io_cancel",
    "ioctl", "io_destroy", "io_getevents", "ioprio_get", "ioprio_set",
    "io_setup", "io_submit", "lchown", "lgetxattr", "link", "linkat",
    "listen", "listxattr", "llistxattr", "lseek", "lstat", "madvise",
    "membarrier", "memfd_create", "mkdir", "mkdirat", "mmap", "mprotect", "mremap",
    "munmap", "nanosleep", "newfstatat", "open", "openat", "pause",
    "pipe", "pipe2", "poll", "ppoll", "prctl", "pread64", "preadv",
    "prlimit64", "pselect6", "pwrite64", "pwritev", "read", "readlink",
    "readlinkat", "readv", "recvfrom", "recvmmsg", "recvmsg", "rename",
    "renameat", "renameat2", "restart_syscall", "rmdir", "rseq", "rt_sigaction",
    "rt_sigpending", "rt_sigprocmask", "rt_sigqueueinfo", "rt_sigreturn",
    "rt_sigsuspend", "rt_sigtimedwait", "sched_getaffinity", "sched_getattr",
    "sched_getparam", "sched_get_priority_max", "sched_get_priority_min",
    "sched_getscheduler", "sched_setaffinity", "sched_setattr", "sched_setparam",
    "sched_setscheduler", "sched_yield", "seccomp", "select", "semctl",
    "semget", "semop", "semtimedop", "sendfile", "sendmmsg", "sendmsg",
    "sendto", "setfsgid", "setfsuid", "setgid", "setgroups", "setitimer",
    "setpgid", "setpriority", "setregid", "setresgid", "setresuid",
    "setreuid", "setrlimit", "set_robust_list", "setsid", "setsockopt",
    "set_tid_address", "setuid", "setxattr", "shmat", "shmctl", "shmdt", "shmget",
    "shutdown", "sigaltstack", "socket", "socketpair", "splice",
    "stat", "statfs", "statx", "symlink", "symlinkat", "sync", "sync_file_range",
    "syncfs", "sysinfo", "tee", "tgkill", "time", "timer_create",
    "timer_delete", "timerfd_create", "timerfd_gettime", "timerfd_settime",
    "timer_getoverrun", "timer_gettime", "timer_settime", "times",
    "tkill", "truncate", "umask", "uname", "unlink", "unlinkat",
    "utime", "utimensat", "utimes", "vfork", "wait4", "waitid",
    "write", "writev",
)

SECCOMP_PROFILE: MappingProxyType[str, Any] = MappingProxyType(
    {
        "defaultAction": "SCMP_ACT_ERRNO",
        "architectures": ("SCMP_ARCH_X86_64", "SCMP_ARCH_X86", "SCMP_ARCH_X32"),
        "syscalls": (
            MappingProxyType(
                {"names": ALLOWED_SYSCALLS, "action": "SCMP_ACT_ALLOW"}
            ),
        ),
    }
)


def seccomp_profile_json() -> str:
    """Serialise the allow-list profile the way the engine API expects it."""
    profile = {
        "defaultAction": SECCOMP_PROFILE["defaultAction"],
        "architectures": list(SECCOMP_PROFILE["architectures"]),
        "syscalls": [
            {"names": list(rule["names"]), "action": rule["action"]}
            for rule in SECCOMP_PROFILE["syscalls"]
        ],
    }
    return json.dumps(profile, separators=(",", ":"))


def security_opts(seccomp_mode: str = "allowlist") -> list[str]:
    if seccomp_mode == "allowlist":
        seccomp = f"seccomp={seccomp_profile_json()}"
    else:
        seccomp = "seccomp=default"
    return [
        "no-new-privileges:true",
        seccomp,
        "apparmor=docker-default",
    ]


def parse_memory_limit(limit: str) -> int:
    match = _MEMORY_RE.match(limit.strip().lower()) if limit else None
    if match is None:
        return DEFAULT_MEMORY_BYTES
    return int(match.group(1)) * _MEMORY_UNITS[match.group(2)]


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: int
    memory_swap_bytes: int
    nano_cpus: int
    pids_limit: int = PIDS_LIMIT
    nofile_soft: int = NOFILE_SOFT
    nofile_hard: int = NOFILE_HARD
    nproc_soft: int = NPROC_SOFT
    nproc_hard: int = NPROC_HARD

    def host_config(self) -> dict[str, Any]:
        """Keyword arguments for ``containers.create`` in the docker SDK."""
        return {
            "mem_limit": self.memory_bytes,
            "memswap_limit": self.memory_swap_bytes,
            "nano_cpus": self.nano_cpus,
            "pids_limit": self.pids_limit,
            "ulimits": [
                Ulimit(name="nofile", soft=self.nofile_soft, hard=self.nofile_hard),
                Ulimit(name="nproc", soft=self.nproc_soft, hard=self.nproc_hard),
            ],
        }


def compute_resource_limits(memory_limit: str, cpu_limit: float) -> ResourceLimits:
    memory = parse_memory_limit(memory_limit)
    return ResourceLimits(
        memory_bytes=memory,
        memory_swap_bytes=memory,
        nano_cpus=int(cpu_limit * 1e9),
    )
