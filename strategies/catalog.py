"""
catalog.py - Built-in Strategy Catalog

Concrete signal functions, at least one per category. Each strategy is a
stateless BaseStrategy subclass; `strategies.registry` instantiates and
registers them by id. Thresholds are tuned for 1m scalping windows.
"""

from __future__ import annotations

from typing import Dict, Sequence

from strategies.base import BaseStrategy, ParameterRange, Signal, SignalAction, StrategyCategory


def _avg_volume(candles: Sequence[Dict[str, float]], period: int = 20) -> float:
    window = candles[-period:]
    if not window:
        return 0.0
    return sum(c['volume'] for c in window) / len(window)


class RSIBollingerStrategy(BaseStrategy):
    """Buy oversold RSI at the lower band, sell overbought RSI at the upper band."""

    id = "rsi-bb"
    name = "RSI + Bollinger Bands"
    category = StrategyCategory.MEAN_REVERSION
    difficulty = "beginner"
    description = "RSI below 35 with price at the lower band buys; RSI above 65 at the upper band sells"
    default_parameters = {'rsi_period': 14, 'bb_period': 20, 'bb_std_dev': 2.0}
    parameter_ranges = {
        'rsi_period': ParameterRange(7, 21, 1),
        'bb_period': ParameterRange(15, 25, 1),
        'bb_std_dev': ParameterRange(1.5, 2.5, 0.1),
    }
    required_indicators = ['rsi', 'bb']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        if len(candles) < self.min_candles:
            return self.hold()
        df = self.frame(candles)
        rsi = self.indicator('rsi', df, period=int(p['rsi_period']))['value']
        bb = self.indicator('bb', df, period=int(p['bb_period']), std_dev=float(p['bb_std_dev']))
        r, upper, lower = rsi.iloc[-1], bb['upper'].iloc[-1], bb['lower'].iloc[-1]
        if any(v != v for v in (r, upper, lower)):
            return self.hold()
        price = candles[-1]['close']
        ind = {'rsi': float(r), 'bb_upper': float(upper), 'bb_lower': float(lower), 'price': price}

        if r < 35 and price <= lower:
            return self.signal(SignalAction.BUY, 0.5 + (35 - r) / 70, f"RSI {r:.1f} oversold at lower band", ind)
        if r > 65 and price >= upper:
            return self.signal(SignalAction.SELL, 0.5 + (r - 65) / 70, f"RSI {r:.1f} overbought at upper band", ind)
        return self.hold(ind)


class VWAPReversionStrategy(BaseStrategy):
    """Fade stretched moves away from VWAP when volume confirms."""

    id = "vwap-reversion"
    name = "VWAP Reversion"
    category = StrategyCategory.MEAN_REVERSION
    difficulty = "beginner"
    description = "Price stretched beyond VWAP on rising volume is expected to revert"
    default_parameters = {'deviation_pct': 0.2, 'volume_multiplier': 1.2}
    parameter_ranges = {
        'deviation_pct': ParameterRange(0.1, 0.5, 0.05),
        'volume_multiplier': ParameterRange(1.0, 2.0, 0.1),
    }
    required_indicators = ['vwap']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        if len(candles) < 2:
            return self.hold()
        vwap = self.indicator('vwap', self.frame(candles))['value'].iloc[-1]
        if vwap != vwap or vwap <= 0:
            return self.hold()
        price = candles[-1]['close']
        vol = candles[-1]['volume']
        avg_vol = _avg_volume(candles)
        deviation = (price - vwap) / vwap * 100
        volume_ratio = vol / avg_vol if avg_vol > 0 else 0.0
        ind = {'vwap': float(vwap), 'price': price, 'deviation': deviation, 'volume_ratio': volume_ratio}

        volume_ok = avg_vol > 0 and vol > avg_vol * p['volume_multiplier']
        if deviation < -p['deviation_pct'] and volume_ok:
            return self.signal(SignalAction.BUY, 0.5 + min(abs(deviation) / 2, 0.4),
                               f"{deviation:.2f}% below VWAP on rising volume", ind)
        if deviation > p['deviation_pct'] and volume_ok:
            return self.signal(SignalAction.SELL, 0.5 + min(deviation / 2, 0.4),
                               f"{deviation:.2f}% above VWAP on rising volume", ind)
        return self.hold(ind)


class EMACrossoverStrategy(BaseStrategy):
    """Golden / death cross of a fast and slow EMA."""

    id = "ema-crossover"
    name = "EMA Crossover"
    category = StrategyCategory.TREND_FOLLOWING
    difficulty = "beginner"
    description = "Fast EMA crossing above the slow EMA buys; crossing below sells"
    default_parameters = {'fast_period': 5, 'slow_period': 13}
    parameter_ranges = {
        'fast_period': ParameterRange(3, 9, 1),
        'slow_period': ParameterRange(10, 21, 1),
    }
    required_indicators = ['ema']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        if len(candles) < 3:
            return self.hold()
        df = self.frame(candles)
        fast = self.indicator('ema', df, period=int(p['fast_period']))['value']
        slow = self.indicator('ema', df, period=int(p['slow_period']))['value']
        f_now, f_prev = fast.iloc[-1], fast.iloc[-2]
        s_now, s_prev = slow.iloc[-1], slow.iloc[-2]
        ind = {'fast_ema': float(f_now), 'slow_ema': float(s_now)}
        label = f"({int(p['fast_period'])}/{int(p['slow_period'])})"

        if f_prev <= s_prev and f_now > s_now:
            gap = (f_now - s_now) / s_now * 100
            return self.signal(SignalAction.BUY, 0.6 + min(gap * 10, 0.3), f"EMA golden cross {label}", ind)
        if f_prev >= s_prev and f_now < s_now:
            gap = (s_now - f_now) / s_now * 100
            return self.signal(SignalAction.SELL, 0.6 + min(gap * 10, 0.3), f"EMA death cross {label}", ind)
        return self.hold(ind)


class DonchianBreakoutStrategy(BaseStrategy):
    """Channel breakout confirmed by a volume spike."""

    id = "donchian-breakout"
    name = "Donchian Breakout + Volume"
    category = StrategyCategory.BREAKOUT
    difficulty = "beginner"
    description = "Close through the N-bar high on a volume spike buys; through the low sells"
    default_parameters = {'period': 20, 'volume_multiplier': 2.0}
    parameter_ranges = {
        'period': ParameterRange(10, 30, 5),
        'volume_multiplier': ParameterRange(1.5, 3.0, 0.5),
    }
    required_indicators = ['donchian']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        period = int(p['period'])
        if len(candles) < period + 2:
            return self.hold()
        dc = self.indicator('donchian', self.frame(candles), period=period)
        upper, lower = dc['upper'].iloc[-1], dc['lower'].iloc[-1]
        prev_upper, prev_lower = dc['upper'].iloc[-2], dc['lower'].iloc[-2]
        if any(v != v for v in (upper, lower, prev_upper, prev_lower)):
            return self.hold()
        price = candles[-1]['close']
        prev_close = candles[-2]['close']
        vol = candles[-1]['volume']
        avg_vol = _avg_volume(candles)
        volume_ok = avg_vol > 0 and vol > avg_vol * p['volume_multiplier']
        ind = {'dc_upper': float(upper), 'dc_lower': float(lower), 'price': price,
               'volume_ratio': vol / avg_vol if avg_vol > 0 else 0.0}

        if prev_close <= prev_upper and price > upper and volume_ok:
            return self.signal(SignalAction.BUY, 0.65, f"Broke channel high {upper:.4f} on volume", ind)
        if prev_close >= prev_lower and price < lower and volume_ok:
            return self.signal(SignalAction.SELL, 0.65, f"Broke channel low {lower:.4f} on volume", ind)
        return self.hold(ind)


class MACDRSIStrategy(BaseStrategy):
    """MACD cross confirmed by RSI turning in the same direction."""

    id = "macd-rsi"
    name = "MACD + RSI"
    category = StrategyCategory.MOMENTUM
    difficulty = "beginner"
    description = "MACD golden cross with a rising RSI below 45 buys; the mirror sells"
    default_parameters = {'macd_fast': 8, 'macd_slow': 17, 'macd_signal': 9, 'rsi_period': 10}
    parameter_ranges = {
        'macd_fast': ParameterRange(5, 12, 1),
        'macd_slow': ParameterRange(13, 26, 1),
        'macd_signal': ParameterRange(5, 9, 1),
        'rsi_period': ParameterRange(7, 14, 1),
    }
    required_indicators = ['macd', 'rsi']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        if len(candles) < self.min_candles:
            return self.hold()
        df = self.frame(candles)
        macd = self.indicator('macd', df, fast=int(p['macd_fast']), slow=int(p['macd_slow']),
                              signal=int(p['macd_signal']))
        rsi = self.indicator('rsi', df, period=int(p['rsi_period']))['value']
        tail = [macd['macd'].iloc[-1], macd['signal'].iloc[-1], macd['macd'].iloc[-2],
                macd['signal'].iloc[-2], rsi.iloc[-1], rsi.iloc[-2]]
        if any(v != v for v in tail):
            return self.hold()
        m_now, s_now, m_prev, s_prev, r, r_prev = (float(v) for v in tail)
        ind = {'macd': m_now, 'macd_signal': s_now, 'rsi': r}

        if m_prev <= s_prev and m_now > s_now and r < 45 and r > r_prev:
            return self.signal(SignalAction.BUY, 0.6, f"MACD golden cross, RSI {r:.1f} rising", ind)
        if m_prev >= s_prev and m_now < s_now and r > 55 and r < r_prev:
            return self.signal(SignalAction.SELL, 0.6, f"MACD death cross, RSI {r:.1f} falling", ind)
        return self.hold(ind)


class OBVDivergenceStrategy(BaseStrategy):
    """Price/OBV divergence confirmed by a reversal candle."""

    id = "obv-divergence"
    name = "OBV Divergence + Candle Pattern"
    category = StrategyCategory.DIVERGENCE
    difficulty = "intermediate"
    description = "Falling price with rising OBV plus a hammer or bullish engulfing buys"
    default_parameters = {'divergence_window': 10}
    parameter_ranges = {'divergence_window': ParameterRange(5, 20, 5)}
    required_indicators = ['obv']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        window = int(p['divergence_window'])
        if len(candles) < window + 2:
            return self.hold()
        obv = self.indicator('obv', self.frame(candles))['value']
        price_trend = candles[-1]['close'] - candles[-window]['close']
        obv_trend = float(obv.iloc[-1] - obv.iloc[-window])

        c, prev = candles[-1], candles[-2]
        body = abs(c['close'] - c['open'])
        rng = c['high'] - c['low']
        is_hammer = rng > 0 and body / rng < 0.3 and (c['close'] - c['low']) / rng > 0.6
        is_bull_engulf = prev['close'] < prev['open'] and c['close'] > c['open'] and c['close'] > prev['open']
        is_star = rng > 0 and body / rng < 0.3 and (c['high'] - c['close']) / rng > 0.6
        is_bear_engulf = prev['close'] > prev['open'] and c['close'] < c['open'] and c['close'] < prev['open']
        ind = {'obv_trend': obv_trend, 'price_trend': price_trend,
               'is_hammer': 1.0 if is_hammer else 0.0, 'is_bull_engulf': 1.0 if is_bull_engulf else 0.0}

        if price_trend < 0 and obv_trend > 0 and (is_hammer or is_bull_engulf):
            pattern = "hammer" if is_hammer else "engulfing"
            return self.signal(SignalAction.BUY, 0.7, f"Bullish OBV divergence + {pattern}", ind)
        if price_trend > 0 and obv_trend < 0 and (is_star or is_bear_engulf):
            pattern = "shooting star" if is_star else "engulfing"
            return self.signal(SignalAction.SELL, 0.7, f"Bearish OBV divergence + {pattern}", ind)
        return self.hold(ind)


class OrderbookImbalanceStrategy(BaseStrategy):
    """
    Order-book pressure approximated from candles.

    Each bar's volume is split into buy/sell portions by where the close sits
    inside the bar's range.
    """

    id = "orderbook-imbalance"
    name = "Order Book Imbalance"
    category = StrategyCategory.ORDER_FLOW
    difficulty = "advanced"
    description = "Buy-side volume dominating recent bars while price turns up buys"
    default_parameters = {'imbalance_ratio': 2.0, 'lookback': 5}
    parameter_ranges = {
        'imbalance_ratio': ParameterRange(1.5, 3.0, 0.5),
        'lookback': ParameterRange(3, 10, 1),
    }
    required_indicators = ['obv']

    def analyze(self, candles, params) -> Signal:
        p = self.params_with_defaults(params)
        lookback = int(p['lookback'])
        ratio = p['imbalance_ratio']
        if len(candles) < lookback + 1:
            return self.hold()

        buy_vol = sell_vol = 0.0
        for c in candles[-lookback:]:
            rng = c['high'] - c['low']
            buy_ratio = (c['close'] - c['low']) / rng if rng > 0 else 0.5
            buy_vol += c['volume'] * buy_ratio
            sell_vol += c['volume'] * (1 - buy_ratio)

        imbalance = buy_vol / sell_vol if sell_vol > 0 else 1.0
        sell_imbalance = sell_vol / buy_vol if buy_vol > 0 else 1.0
        rising = candles[-1]['close'] > candles[-2]['close']
        ind = {'buy_volume': buy_vol, 'sell_volume': sell_vol, 'imbalance': imbalance,
               'price_rising': 1.0 if rising else 0.0}

        if imbalance > ratio and rising:
            return self.signal(SignalAction.BUY, 0.6 + min((imbalance - ratio) / 5, 0.3),
                               f"Buy pressure {imbalance:.1f}x with price rising", ind)
        if sell_imbalance > ratio and not rising:
            return self.signal(SignalAction.SELL, 0.6 + min((sell_imbalance - ratio) / 5, 0.3),
                               f"Sell pressure {sell_imbalance:.1f}x with price falling", ind)
        return self.hold(ind)


BUILTIN_STRATEGIES = [
    RSIBollingerStrategy,
    VWAPReversionStrategy,
    EMACrossoverStrategy,
    DonchianBreakoutStrategy,
    MACDRSIStrategy,
    OBVDivergenceStrategy,
    OrderbookImbalanceStrategy,
]
