"""appdb command-line interface (``appdb setup | status | migrate``)."""
