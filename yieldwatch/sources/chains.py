"""
Chain tables shared by sources and read views.

Solana venues have no EVM chain id; Exponent and RateX get synthetic ids
(501, 502) so they can share the (chain_id, market_address) pool key.
"""

from typing import Optional

SOLANA_EXPONENT_CHAIN_ID = 501
SOLANA_RATEX_CHAIN_ID = 502

# Pendle networks scanned on every run
PENDLE_CHAINS = (
    (1, "Ethereum"),
    (42161, "Arbitrum"),
    (56, "BNB Chain"),
    (10, "Optimism"),
    (5000, "Mantle"),
    (8453, "Base"),
    (146, "Sonic"),
    (999, "Hyperliquid"),
    (21000000, "Corn"),
    (80094, "Berachain"),
)

CHAIN_NAMES = {
    1: "Ethereum",
    42161: "Arbitrum",
    56: "BNB Chain",
    10: "Optimism",
    5000: "Mantle",
    8453: "Base",
    146: "Sonic",
    999: "Hyperliquid",
    21000000: "Corn",
    80094: "Berachain",
    14: "Flare",
    43114: "Avalanche",
    747474: "Katana",
    SOLANA_EXPONENT_CHAIN_ID: "Solana",
    SOLANA_RATEX_CHAIN_ID: "Solana",
}

# Spectra labels chain 999 HyperEVM rather than Hyperliquid
SPECTRA_CHAIN_NAMES = {
    1: "Ethereum",
    42161: "Arbitrum",
    10: "Optimism",
    8453: "Base",
    146: "Sonic",
    43114: "Avalanche",
    56: "BNB Chain",
    14: "Flare",
    747474: "Katana",
    999: "HyperEVM",
}

# Slugs used in app.spectra.finance pool links (pools/<slug>:<address>)
SPECTRA_SLUG_TO_CHAIN = {
    "eth": 1, "ethereum": 1, "mainnet": 1,
    "arbitrum": 42161, "arb": 42161,
    "op": 10, "optimism": 10,
    "base": 8453,
    "sonic": 146,
    "avax": 43114, "avalanche": 43114,
    "bsc": 56, "bnb": 56,
    "flare": 14,
    "katana": 747474,
    "hyperevm": 999,
}

SPECTRA_CHAIN_SLUGS = {
    1: "eth",
    42161: "arbitrum",
    10: "op",
    8453: "base",
    146: "sonic",
    43114: "avax",
    56: "bsc",
    14: "flare",
    747474: "katana",
    999: "hyperevm",
}

# Slugs used in app.pendle.finance market URLs
PENDLE_CHAIN_SLUGS = {
    1: "ethereum",
    42161: "arbitrum",
    56: "bsc",
    10: "optimism",
    5000: "mantle",
    8453: "base",
    146: "sonic",
    999: "hyperliquid",
    21000000: "corn",
    80094: "berachain",
    14: "flare",
    43114: "avalanche",
    747474: "katana",
}


def spectra_chain_id(slug: str, chain_label: Optional[str] = None) -> int:
    """Resolve a Spectra link slug (or, failing that, a chain label) to a chain id.

    Defaults to Ethereum when neither is recognized.
    """
    chain_id = SPECTRA_SLUG_TO_CHAIN.get((slug or "").lower())
    if chain_id is not None:
        return chain_id
    if chain_label:
        label = chain_label.lower()
        for cid, name in SPECTRA_CHAIN_NAMES.items():
            if name.lower() in label:
                return cid
    return 1


def chain_name(chain_id: int) -> str:
    return CHAIN_NAMES.get(chain_id, f"Chain-{chain_id}")
