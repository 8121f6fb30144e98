"""Language and shell profiles."""

import posixpath
import shlex
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class LanguageProfile:
    language: str
    image: str
    build_command: Callable[[str], list[str]]
    extensions: tuple[str, ...]

    def command(self, file_path: str) -> list[str]:
        """Build the argv that runs ``file_path`` (a container path)."""
        return self.build_command(file_path)


@dataclass(frozen=True)
class ShellProfile:
    image: str
    shell: tuple[str, ...]


def _stem(file_path: str) -> str:
    return posixpath.splitext(posixpath.basename(file_path))[0]


# The workspace is mounted read-only, so build output goes to /tmp

def _java(file_path: str) -> list[str]:
    source = shlex.quote(file_path)
    main_class = shlex.quote(_stem(file_path))
    return ["sh", "-c", f"javac -d /tmp {source} && java -cp /tmp {main_class}"]


def _compiled(compiler: str) -> Callable[[str], list[str]]:
    def build(file_path: str) -> list[str]:
        binary = shlex.quote(f"/tmp/{_stem(file_path)}")
        return ["sh", "-c", f"{compiler} {shlex.quote(file_path)} -o {binary} && {binary}"]
    return build


LANGUAGE_PROFILES: dict[str, LanguageProfile] = {
    p.language: p
    for p in (
        LanguageProfile("python", "python:3.11-slim", lambda f: ["python", f], ("py",)),
        LanguageProfile("javascript", "node:20-alpine", lambda f: ["node", f], ("js", "mjs")),
        LanguageProfile("typescript", "node:20-alpine", lambda f: ["npx", "ts-node", f], ("ts",)),
        LanguageProfile("java", "eclipse-temurin:17-jdk", _java, ("java",)),
        LanguageProfile("go", "golang:1.21-alpine", lambda f: ["go", "run", f], ("go",)),
        LanguageProfile("rust", "rust:1.73-slim", _compiled("rustc"), ("rs",)),
        LanguageProfile("ruby", "ruby:3.2-slim", lambda f: ["ruby", f], ("rb",)),
        LanguageProfile("php", "php:8.2-cli", lambda f: ["php", f], ("php",)),
        LanguageProfile("c", "gcc:13", _compiled("gcc"), ("c",)),
        LanguageProfile("cpp", "gcc:13", _compiled("g++"), ("cpp", "cc", "cxx")),
    )
}

DEFAULT_SHELL = "default"

SHELL_PROFILES: dict[str, ShellProfile] = {
    "python": ShellProfile("python:3.11-slim", ("python",)),
    "javascript": ShellProfile("node:20-alpine", ("node",)),
    "ruby": ShellProfile("ruby:3.2-slim", ("irb",)),
    "php": ShellProfile("php:8.2-cli", ("php", "-a")),
    "bash": ShellProfile("alpine:latest", ("/bin/sh",)),
    DEFAULT_SHELL: ShellProfile("alpine:latest", ("/bin/sh",)),
}


def language_for_extension(
    file_path: str,
    profiles: dict[str, LanguageProfile] = LANGUAGE_PROFILES,
) -> Optional[str]:
    """Return the language whose extensions match ``file_path``, if any."""
    ext = posixpath.splitext(file_path.replace("\\", "/"))[1].lstrip(".").lower()
    if not ext:
        return None
    for profile in profiles.values():
        if ext in profile.extensions:
            return profile.language
    return None
