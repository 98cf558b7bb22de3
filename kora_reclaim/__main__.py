from kora_reclaim.cli import main

main()
