"""
Read-only ERC-20 balance lookups.
web3's HTTPProvider is synchronous, so calls run in the default executor.
"""
import asyncio

from web3 import Web3


ERC20_BALANCE_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class BalanceReader:
    def __init__(self, rpc_url: str):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))

    def balance_of_sync(self, token_address: str, owner: str) -> int:
        token = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_BALANCE_ABI)
        return int(token.functions.balanceOf(Web3.to_checksum_address(owner)).call())

    async def balance_of(self, token_address: str, owner: str) -> int:
        """Balance in the token's smallest unit."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.balance_of_sync, token_address, owner)
