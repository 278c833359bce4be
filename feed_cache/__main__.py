from feed_cache.cli import main

main()
