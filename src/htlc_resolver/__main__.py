from htlc_resolver.main import main

main()
