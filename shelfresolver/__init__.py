"""ShelfResolver: resolve photographed shelf items to canonical catalog records."""
