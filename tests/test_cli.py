"""
test_cli.py - Tests for the operator CLI using candle files
"""

import json

import pytest

import main
from conftest import DummyGateway, make_candles
from interfaces.cli import _main, build_parser
from persistence.store import Store


@pytest.fixture
def candles_file(tmp_path):
    path = tmp_path / "candles.json"
    path.write_text(json.dumps(make_candles(300)))
    return str(path)


@pytest.fixture
def base_args(tmp_path):
    return ["--config", str(tmp_path / "missing.yaml"), "--db", f"sqlite:///{tmp_path / 'cli.db'}",
            "--log-level", "WARNING"]


def last_json(capsys):
    out = capsys.readouterr().out
    return json.loads(out[out.index("{"):])


class TestCli:

    def test_parser_commands(self):
        args = build_parser().parse_args(["optimize", "--strategy", "rsi-bb", "--optimize-for", "winRate"])
        assert args.cmd == "optimize"
        assert args.optimize_for == "winRate"
        assert args.limit == 1000

    @pytest.mark.asyncio
    async def test_no_command_prints_help(self, base_args):
        assert await _main(base_args) == 1

    @pytest.mark.asyncio
    async def test_backtest_from_file(self, base_args, candles_file, capsys):
        code = await _main(base_args + ["backtest", "--strategy", "rsi-bb", "--candles", candles_file])
        assert code == 0
        summary = last_json(capsys)
        assert summary['strategy_id'] == 'rsi-bb'
        assert 'trades' not in summary

    @pytest.mark.asyncio
    async def test_backtest_save(self, base_args, candles_file, capsys):
        code = await _main(base_args + ["backtest", "--strategy", "ema-crossover", "--candles", candles_file,
                                        "--params", '{"fast_period": 8, "slow_period": 21}', "--save", "--trades"])
        assert code == 0
        out = capsys.readouterr().out
        assert "Saved backtest #1" in out
        assert '"trades"' in out

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, base_args, candles_file):
        assert await _main(base_args + ["backtest", "--strategy", "nope", "--candles", candles_file]) == 2

    @pytest.mark.asyncio
    async def test_bad_params(self, base_args, candles_file):
        code = await _main(base_args + ["backtest", "--strategy", "rsi-bb", "--candles", candles_file,
                                        "--params", "[1, 2]"])
        assert code == 2

    @pytest.mark.asyncio
    async def test_missing_candles_file(self, base_args, tmp_path):
        code = await _main(base_args + ["backtest", "--strategy", "rsi-bb",
                                        "--candles", str(tmp_path / "none.json")])
        assert code == 2

    @pytest.mark.asyncio
    async def test_walk_forward_exit_code(self, base_args, candles_file, capsys):
        code = await _main(base_args + ["walk-forward", "--strategy", "rsi-bb", "--candles", candles_file])
        result = last_json(capsys)
        assert code == (0 if result['passed'] else 1)

    @pytest.mark.asyncio
    async def test_rebalance_with_short_history(self, base_args, tmp_path, capsys):
        path = tmp_path / "short.json"
        path.write_text(json.dumps(make_candles(60)))
        assert await _main(base_args + ["rebalance", "--candles", str(path)]) == 0
        report = last_json(capsys)
        assert report['changes'][0]['strategy_id'] == 'system'

    @pytest.mark.asyncio
    async def test_rebalance_uses_stored_history_when_exchange_fails(self, base_args, tmp_path, capsys, monkeypatch):
        Store(f"sqlite:///{tmp_path / 'cli.db'}").save_candles('WLD/USDC', '1m', make_candles(80))
        gateway = DummyGateway()

        async def down(*args, **kwargs):
            raise RuntimeError("exchange down")
        gateway.fetch_candles = down
        monkeypatch.setattr(main, 'build_gateway', lambda config: gateway)

        assert await _main(base_args + ["rebalance"]) == 0
        report = last_json(capsys)
        assert report['changes'][0]['reason'] == "insufficient candle data (80 < 200)"
        assert gateway.closed

    @pytest.mark.asyncio
    async def test_status_without_session(self, base_args, capsys):
        assert await _main(base_args + ["status"]) == 0
        status = last_json(capsys)
        assert status['session'] is None
        assert status['allocations'] == []
