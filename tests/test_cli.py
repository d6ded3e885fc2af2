from sqlalchemy import create_engine
from typer.testing import CliRunner

from event_ingestion.cli import app
from event_ingestion.state import CheckpointStore

runner = CliRunner()


def cli_env(tmp_path):
    return {
        "DATABASE_URL": f"sqlite:///{tmp_path / 'cli.db'}",
        "RPC_URLS": "http://localhost:8545",
        "JOB_NAME": "cli_job",
    }


def test_init_db_and_set_checkpoint(tmp_path):
    env = cli_env(tmp_path)

    result = runner.invoke(app, ["init-db"], env=env)
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["set-checkpoint", "100", "--reason", "seed"], env=env)
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["set-checkpoint", "500", "--reason", "jump"], env=env)
    assert result.exit_code == 0, result.output

    store = CheckpointStore(create_engine(env["DATABASE_URL"]), "cli_job")
    assert store.load().last_indexed_block == 500
    assert [(r.from_block, r.to_block) for r in store.skipped()] == [(101, 500)]


def test_missing_database_url_is_a_config_error(tmp_path):
    env = cli_env(tmp_path)
    env["DATABASE_URL"] = ""

    result = runner.invoke(app, ["init-db"], env=env)
    assert result.exit_code == 2


def test_backfill_needs_both_bounds(tmp_path):
    result = runner.invoke(app, ["backfill", "--from-block", "10"], env=cli_env(tmp_path))
    assert result.exit_code == 2
