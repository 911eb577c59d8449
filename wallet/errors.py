# wallet/errors.py
class WalletError(Exception):
    """Base wallet job error."""
    def __init__(self, msg: str = ""):
        super().__init__(msg)
        self.msg = msg

    def __str__(self):
        return self.msg or self.__class__.__name__

class TransportError(WalletError):
    """Network/protocol failure while talking to jmwalletd (includes malformed responses)."""

    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.ctx = ctx

    def __str__(self):
        base = super().__str__()
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base

class ScopeCancelled(WalletError):
    """The owning cancellation scope was cancelled; the resumed result is discarded."""

class EngineBusyError(WalletError, RuntimeError):
    """start() called while a reconciliation run is still active (caller bug)."""
