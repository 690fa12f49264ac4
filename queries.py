"""
GraphQL documents sent to Bitquery.

Subscriptions feed the live socket, the matching queries seed the feeds once
at startup and back the per-token lookups.
"""

from models import Category

PUMP_FUN_PROGRAM = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
PUMP_SWAP_PROGRAM = "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA"
WSOL_MINT = "So11111111111111111111111111111111111111112"
NATIVE_SOL_MINT = "11111111111111111111111111111111"

_NEW_PAIR_FIELDS = """
      Block {
        Time
      }
      Transaction {
        Signer
      }
      TokenSupplyUpdate {
        Amount
        Currency {
          Symbol
          Name
          MintAddress
          ProgramAddress
          Decimals
          Uri
        }
        PostBalance
      }
"""

_FINAL_STRETCH_FIELDS = """
      Block {
        Time
      }
      Pool {
        Market {
          MarketAddress
          BaseCurrency {
            MintAddress
            Name
            Symbol
            Uri
          }
          QuoteCurrency {
            MintAddress
            Name
            Symbol
          }
        }
        Dex {
          ProtocolName
          ProtocolFamily
        }
        Base {
          PostAmount
        }
        Quote {
          PostAmount
          PriceInUSD
          PostAmountInUSD
        }
      }
"""

_MIGRATED_FIELDS = """
      Block {
        Time
      }
      Transaction {
        Signature
        Signer
      }
      Instruction {
        Program {
          Method
          Arguments {
            Name
            Type
            Value {
              ... on Solana_ABI_Integer_Value_Arg {
                integer
              }
              ... on Solana_ABI_BigInt_Value_Arg {
                bigInteger
              }
            }
          }
        }
        Accounts {
          Address
          Token {
            Mint
            Owner
            ProgramId
          }
        }
      }
"""

_NEW_PAIR_WHERE = (
    '{Instruction: {Program: {Address: {is: "%s"}, Method: {is: "create"}}}}' % PUMP_FUN_PROGRAM
)

_FINAL_STRETCH_WHERE = (
    '{Pool: {Base: {PostAmount: {gt: "206900000", lt: "246555000"}}, '
    'Dex: {ProgramAddress: {is: "%s"}}, '
    'Market: {QuoteCurrency: {MintAddress: {in: ["%s", "%s"]}}}}, '
    'Transaction: {Result: {Success: true}}}' % (PUMP_FUN_PROGRAM, NATIVE_SOL_MINT, WSOL_MINT)
)

_MIGRATED_WHERE = (
    '{Instruction: {Program: {Address: {is: "%s"}, Method: {is: "create_pool"}}}, '
    'Transaction: {Result: {Success: true}}}' % PUMP_SWAP_PROGRAM
)


def _subscription(entity: str, where: str, fields: str) -> str:
    return "subscription {\n  Solana {\n    %s(where: %s) {%s    }\n  }\n}" % (entity, where, fields)


def _snapshot(entity: str, where: str, fields: str) -> str:
    return (
        "query ($limit: Int!) {\n  Solana {\n    %s(\n"
        "      limit: {count: $limit}\n"
        "      orderBy: {descending: Block_Time}\n"
        "      where: %s\n"
        "    ) {%s    }\n  }\n}" % (entity, where, fields)
    )


# Row list name in the "Solana" object of each category
ROW_FIELDS = {
    Category.NEW_PAIR: "TokenSupplyUpdates",
    Category.FINAL_STRETCH: "DEXPools",
    Category.MIGRATED: "Instructions",
}

SUBSCRIPTIONS = {
    Category.NEW_PAIR.value: _subscription("TokenSupplyUpdates", _NEW_PAIR_WHERE, _NEW_PAIR_FIELDS),
    Category.FINAL_STRETCH.value: _subscription("DEXPools", _FINAL_STRETCH_WHERE, _FINAL_STRETCH_FIELDS),
    Category.MIGRATED.value: _subscription("Instructions", _MIGRATED_WHERE, _MIGRATED_FIELDS),
}

INITIAL_QUERIES = {
    Category.NEW_PAIR: _snapshot("TokenSupplyUpdates", _NEW_PAIR_WHERE, _NEW_PAIR_FIELDS),
    Category.FINAL_STRETCH: _snapshot("DEXPools", _FINAL_STRETCH_WHERE, _FINAL_STRETCH_FIELDS),
    Category.MIGRATED: _snapshot("Instructions", _MIGRATED_WHERE, _MIGRATED_FIELDS),
}

TOKEN_INFO_QUERY = """
query GetTokenMetadata($mintAddress: String!) {
  Solana {
    TokenSupplyUpdates(
      where: {
        Instruction: {Program: {Address: {is: "%s"}, Method: {is: "create"}}},
        TokenSupplyUpdate: {Currency: {MintAddress: {is: $mintAddress}}}
      }
    ) {
      Block {
        Time
      }
      Transaction {
        Signer
      }
      TokenSupplyUpdate {
        Currency {
          Symbol
          Name
          MintAddress
          Decimals
          Uri
        }
      }
    }
  }
}
""" % PUMP_FUN_PROGRAM

TRADING_PAIRS_QUERY = """
query GetTradingPairs($mintAddress: String!) {
  Solana {
    DEXTradeByTokens(where: {Trade: {Currency: {MintAddress: {is: $mintAddress}}}}) {
      count
      Trade {
        Market {
          MarketAddress
        }
        Dex {
          ProgramAddress
          ProtocolName
          ProtocolFamily
        }
      }
    }
  }
}
"""

OHLCV_QUERY = """
query GetOHLCVData($mintAddress: String!, $limit: Int!) {
  Solana {
    DEXTradeByTokens(
      limit: {count: $limit}
      orderBy: {descendingByField: "Block_Timefield"}
      where: {
        Trade: {
          Currency: {MintAddress: {is: $mintAddress}},
          Dex: {ProgramAddress: {is: "%s"}},
          PriceAsymmetry: {lt: 0.1}
        }
      }
    ) {
      Block {
        Timefield: Time(interval: {in: seconds, count: 15})
      }
      volume: sum(of: Trade_Amount)
      Trade {
        high: Price(maximum: Trade_Price)
        low: Price(minimum: Trade_Price)
        open: Price(minimum: Block_Slot)
        close: Price(maximum: Block_Slot)
      }
      count
    }
  }
}
""" % PUMP_FUN_PROGRAM
