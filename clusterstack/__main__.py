from clusterstack.cli import main

main()
