"""WatchSync: cached watch progress and watchlist sync for Jellyfin."""
