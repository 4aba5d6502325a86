"""Report exports (CSV, XLSX, photo ZIP) for administrators."""
