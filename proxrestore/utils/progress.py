"""Progress reporting utilities."""

import sys
from typing import Callable, Optional
from tqdm import tqdm


# Textual progress callback used by scans (one message per step).
ReportFunc = Callable[[str], None]


class ProgressReporter:
    """Progress reporting for long-running operations."""

    def __init__(self, total: Optional[int], description: str = "Processing", unit: str = "items",
                 unit_scale: bool = False, disable: bool = False):
        self.total = total
        self.description = description
        self.unit = unit
        self.unit_scale = unit_scale
        self.disable = disable
        self.progress_bar = None
        self.processed = 0
        self.errors = 0

    def start(self):
        """Start progress reporting."""
        self.progress_bar = tqdm(
            total=self.total,
            desc=self.description,
            unit=self.unit,
            unit_scale=self.unit_scale,
            disable=self.disable,
            file=sys.stdout
        )

    def update(self, success: bool = True, amount: int = 1):
        """Record one processed item (or `amount` bytes)."""
        if self.progress_bar is None:
            return
        if success:
            self.processed += 1
        else:
            self.errors += 1
        if self.unit == "items":
            self.progress_bar.set_postfix({
                'processed': self.processed,
                'errors': self.errors
            })
        self.progress_bar.update(amount)

    def advance(self, amount: int):
        """Advance a byte-oriented bar; usable as a boto3 transfer callback."""
        if self.progress_bar is not None:
            self.progress_bar.update(amount)

    def message(self, text: str):
        """Show a status line next to the bar."""
        if self.progress_bar is not None:
            self.progress_bar.set_postfix_str(text)

    def finish(self):
        """Finish progress reporting."""
        if self.progress_bar:
            self.progress_bar.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.finish()


def log_report(logger) -> ReportFunc:
    """Adapt a logger into a ReportFunc."""
    def _report(message: str):
        logger.info(message)
    return _report
