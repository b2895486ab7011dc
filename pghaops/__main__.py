from pghaops.cli import main

main()
