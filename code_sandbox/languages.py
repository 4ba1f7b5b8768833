from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from code_sandbox.errors import UnsupportedLanguageError

BUILD_DIR = "/build"


class Language(str, Enum):
    python = "python"
    javascript = "javascript"
    cpp = "cpp"
    java = "java"
    go = "go"


@dataclass(frozen=True)
class LanguageRuntime:
    image: str
    command: tuple[str, ...]
    file_extension: str
    compile: str | None = None
    run: str | None = None
    source_path: str | None = None

    @property
    def compiled(self) -> bool:
        return self.compile is not None


def _image(language: Language) -> str:
    default = {
        Language.python: "sandbox-python-runner:latest",
        Language.javascript: "sandbox-node-runner:latest",
        Language.cpp: "sandbox-cpp-runner:latest",
        Language.java: "sandbox-java-runner:latest",
        Language.go: "sandbox-go-runner:latest",
    }[language]
    return os.getenv(f"RUNNER_IMAGE_{language.value.upper()}", default)


def build_registry() -> Mapping[Language, LanguageRuntime]:
    shell = ("/bin/sh", "-c")
    return MappingProxyType(
        {
            Language.python: LanguageRuntime(
                image=_image(Language.python),
                command=("python3", "-c"),
                file_extension=".py",
            ),
            Language.javascript: LanguageRuntime(
                image=_image(Language.javascript),
                command=("node", "-e"),
                file_extension=".js",
            ),
            Language.cpp: LanguageRuntime(
                image=_image(Language.cpp),
                command=shell,
                compile=f"g++ -O2 -o {BUILD_DIR}/program {BUILD_DIR}/code.cpp",
                run=f"{BUILD_DIR}/program",
                source_path=f"{BUILD_DIR}/code.cpp",
                file_extension=".cpp",
            ),
            Language.java: LanguageRuntime(
                image=_image(Language.java),
                command=shell,
                compile=f"javac -d {BUILD_DIR} {BUILD_DIR}/Main.java",
                run=f"java -cp {BUILD_DIR} Main",
                source_path=f"{BUILD_DIR}/Main.java",
                file_extension=".java",
            ),
            Language.go: LanguageRuntime(
                image=_image(Language.go),
                command=shell,
                compile=(
                    f"cd {BUILD_DIR} && GOCACHE={BUILD_DIR}/.cache"
                    f" go build -o {BUILD_DIR}/program code.go"
                ),
                run=f"{BUILD_DIR}/program",
                source_path=f"{BUILD_DIR}/code.go",
                file_extension=".go",
            ),
        }
    )


LANGUAGES = build_registry()


def get_runtime(
    language: str | Language,
    registry: Mapping[Language, LanguageRuntime] = LANGUAGES,
) -> LanguageRuntime:
    try:
        return registry[Language(language)]
    except (ValueError, KeyError):
        raise UnsupportedLanguageError(str(getattr(language, "value", language))) from None
