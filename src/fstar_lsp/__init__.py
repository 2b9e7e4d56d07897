"""Language server bridging editors to the fstar.exe IDE protocol."""

from fstar_lsp.exceptions import FStarLspError, NeverThrown
from fstar_lsp.invariants import never

__all__ = ["__version__", "FStarLspError", "NeverThrown", "never"]

__version__ = "0.1.0"
