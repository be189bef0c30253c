# ABOUTME: Command implementations for the run CLI
# ABOUTME: One module per wrapped tool, each exposing plain functions and a typer sub-app

"""
Feature commands.

Each module follows the same shape:

    def operation(run: RunContext, ...) -> ...:
        descriptor = run.descriptor()          # fail fast on missing fields
        run.runner.run([...], run.cwd)         # explicit working directory

    app = typer.Typer(...)                     # thin CLI layer at the bottom

The plain functions are what tests exercise; the typer commands only parse
options and fetch the RunContext stored by the root callback.
"""
