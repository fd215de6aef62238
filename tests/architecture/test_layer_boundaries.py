"""
Layer boundaries.

Tests that enforce the dependency direction between the packages:

1. ledger_kernel/** may NOT import ledger_config or ledger_services.
   The kernel never depends upward.

2. ledger_config/** may NOT import ledger_services.

3. ORM models (ledger_kernel.models.*) are only imported inside the
   kernel.  Services and configuration go through kernel services.

These tests read source code via AST -- they cannot break anything.
"""

import ast
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[Path]:
    return sorted((ROOT / package).rglob("*.py"))


def _extract_imports(filepath: Path) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for all imports in a file."""
    tree = ast.parse(filepath.read_text(), filename=str(filepath))

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    found.append(f"  {filepath.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


class TestNoUpwardDependencies:

    def test_packages_present(self):
        for package in ("ledger_kernel", "ledger_config", "ledger_services"):
            assert _python_files(package), f"{package} not found under {ROOT}"

    def test_kernel_does_not_import_upward(self):
        violations = _violations("ledger_kernel", ("ledger_config", "ledger_services"))

        assert not violations, (
            "Kernel boundary violation -- ledger_kernel/** must not import "
            "upward packages:\n" + "\n".join(violations)
        )

    def test_config_does_not_import_services(self):
        violations = _violations("ledger_config", ("ledger_services",))

        assert not violations, (
            "Config boundary violation -- ledger_config/** must not import "
            "ledger_services:\n" + "\n".join(violations)
        )


class TestModelImportGate:

    MODELS = ("ledger_kernel.models",)

    def test_services_do_not_import_models(self):
        violations = _violations("ledger_services", self.MODELS)

        assert not violations, (
            "ledger_services must use kernel services, not ORM models:\n" + "\n".join(violations)
        )

    def test_config_does_not_import_models(self):
        violations = _violations("ledger_config", self.MODELS)

        assert not violations, (
            "ledger_config must use kernel services, not ORM models:\n" + "\n".join(violations)
        )


class TestNoBareExcept:

    def test_no_bare_except_in_source(self):
        violations = []
        for package in ("ledger_kernel", "ledger_config", "ledger_services"):
            for filepath in _python_files(package):
                tree = ast.parse(filepath.read_text(), filename=str(filepath))
                for node in ast.walk(tree):
                    if isinstance(node, ast.ExceptHandler) and node.type is None:
                        violations.append(f"  {filepath.relative_to(ROOT)}:{node.lineno}")

        assert not violations, "bare except clauses:\n" + "\n".join(violations)
