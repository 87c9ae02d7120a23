from support_broker.serve import main

main()
