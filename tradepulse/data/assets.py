"""Static asset catalog and CoinGecko id mapping."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from tradepulse.data.models import Asset

# Binance symbol -> CoinGecko coin id, used by the polling fallback.
COINGECKO_IDS: Dict[str, str] = {
    "btcusdt": "bitcoin",
    "ethusdt": "ethereum",
    "bnbusdt": "binancecoin",
    "xrpusdt": "ripple",
    "adausdt": "cardano",
    "solusdt": "solana",
    "dogeusdt": "dogecoin",
    "ltcusdt": "litecoin",
    "avaxusdt": "avalanche-2",
    "suiusdt": "sui",
    "linkusdt": "chainlink",
    "xlmusdt": "stellar",
}


def _crypto(symbol: str, name: str, payout: int, price: float) -> Asset:
    return Asset(symbol, name, "Crypto", payout, price, is_simulated=False)


def _sim(symbol: str, name: str, category: str, payout: int, price: float) -> Asset:
    return Asset(symbol, name, category, payout, price, is_simulated=True)


ASSETS: Tuple[Asset, ...] = (
    _crypto("btcusdt", "Bitcoin", 86, 111849.60),
    _crypto("ltcusdt", "Litecoin", 86, 115.69),
    _crypto("adausdt", "Cardano", 86, 0.8986),
    _crypto("bnbusdt", "BNB", 92, 986.94),
    _crypto("xrpusdt", "XRP", 86, 3.0356),
    _crypto("ethusdt", "Ethereum", 86, 4512.84),
    _crypto("solusdt", "Solana", 86, 240.65),
    _crypto("dogeusdt", "DOGE", 80, 0.2448),
    _crypto("avaxusdt", "AVAX", 80, 34.33),
    _crypto("suiusdt", "SUI", 80, 3.19),
    _crypto("linkusdt", "LINK", 80, 20.74),
    _crypto("xlmusdt", "Stellar", 80, 0.28),
    _sim("AAPL_S", "Apple", "Stocks", 98, 237.92),
    _sim("NFLX_S", "Netflix", "Stocks", 88, 1207.78),
    _sim("META_S", "Meta", "Stocks", 96, 780.31),
    _sim("TSLA_S", "Tesla", "Stocks", 94, 416.81),
    _sim("MSFT_S", "Microsoft", "Stocks", 80, 508.42),
    _sim("AMZN_S", "Amazon", "Stocks", 80, 237.92),
    _sim("NVDA_S", "NVIDIA", "Stocks", 80, 237.92),
    _sim("KO_S", "Coca-Cola", "Stocks", 80, 66.09),
    _sim("EURUSD_OTC", "EUR/USD (OTC)", "OTC", 92, 1.1260),
    _sim("BTC_OTC", "Bitcoin (OTC)", "OTC", 92, 111849.60),
    _sim("EURGBP_OTC", "EUR/GBP (OTC)", "OTC", 98, 0.8531),
    _sim("XAUUSD_OTC", "XAU/USD (OTC)", "OTC", 92, 3661.69),
    _sim("EURUSD_F", "EUR/USD", "Forex", 86, 1.1730),
    _sim("GBPUSD_F", "GBP/USD", "Forex", 92, 1.3467),
    _sim("USDJPY_F", "USD/JPY", "Forex", 92, 148.13),
    _sim("XAUUSD_F", "XAU/USD", "Forex", 91, 3648.86),
)

_BY_SYMBOL: Dict[str, Asset] = {a.symbol.lower(): a for a in ASSETS}


def get_asset(symbol: str) -> Optional[Asset]:
    return _BY_SYMBOL.get((symbol or "").lower())


def get_coingecko_id(symbol: str) -> Optional[str]:
    return COINGECKO_IDS.get((symbol or "").lower())


def select_assets(
    symbols: Iterable[str] = (),
    *,
    include_simulated: bool = False,
) -> List[Asset]:
    """Catalog assets filtered by symbol list (empty = all), catalog order kept."""
    wanted = {s.lower() for s in symbols if s}
    selected: List[Asset] = []
    for asset in ASSETS:
        if wanted and asset.symbol.lower() not in wanted:
            continue
        if asset.is_simulated and not include_simulated:
            continue
        selected.append(asset)
    return selected
