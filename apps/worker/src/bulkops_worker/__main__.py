from bulkops_worker.main import main

main()
