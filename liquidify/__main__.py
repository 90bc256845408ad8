from liquidify.cli import main

main()
