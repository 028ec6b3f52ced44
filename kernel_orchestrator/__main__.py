"""Allow ``python -m kernel_orchestrator`` (used for mixed-build children)."""

from kernel_orchestrator.cli import app

if __name__ == "__main__":
    app(prog_name="kbuild")
